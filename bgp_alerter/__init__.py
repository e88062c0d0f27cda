from flask import Flask


def create_app(config=None, store=None, check_queue=None):
    """Create and configure an instance of the registration API."""
    from .config import load_config
    from .database import get_state_store
    from .jobs import CheckQueue
    from .monitors.reconcile import build_reconciler

    app = Flask(__name__)

    # Loads config.json and the root .env file
    config = config if config is not None else load_config()
    store = store if store is not None else get_state_store(config)
    if check_queue is None:
        check_queue = CheckQueue(lambda: build_reconciler(config, store))

    app.config['BGP_ALERTER'] = config
    app.extensions['state_store'] = store
    app.extensions['check_queue'] = check_queue

    # Register blueprints
    from .blueprints import api
    app.register_blueprint(api.bp)

    return app
