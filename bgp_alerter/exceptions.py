"""Exception definitions"""


class BgpAlerterError(Exception):
    """Base exception"""
    pass


class UpstreamUnavailable(BgpAlerterError):
    """A RIPEstat call failed: network, timeout, non-2xx or malformed body"""

    def __init__(self, resource, message):
        super().__init__(f"{resource}: {message}")
        self.resource = resource


class NotificationFailure(BgpAlerterError):
    """The alert channel did not accept a message"""
    pass


class StoreUnavailable(BgpAlerterError):
    """The state store cannot be read or written"""
    pass


class ConfigurationInvalid(BgpAlerterError):
    """Configuration is unreadable or inconsistent"""
    pass
