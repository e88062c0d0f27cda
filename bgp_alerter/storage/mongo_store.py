"""MongoDB state store, same contract as the SQLite one"""
import logging
from contextlib import contextmanager

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..exceptions import StoreUnavailable
from ..models import (
    MonitoredPrefix, PrefixSource, RouteHistoryEntry, RouteSnapshot, RouteStatus, utcnow
)
from .base import StateStore, token_digest

logger = logging.getLogger(__name__)


class MongoStateStore(StateStore):
    """
    Stores route state in three collections: route_current (one document per
    prefix), route_history (append-only) and monitored_prefixes.
    """

    def __init__(self, db, client=None):
        self.db = db
        self.client = client
        with self._errors('create indexes'):
            self.db.route_current.create_index([('prefix', ASCENDING)], unique=True)
            self.db.route_history.create_index([('prefix', ASCENDING), ('detected_at', DESCENDING)])
            self.db.monitored_prefixes.create_index([('prefix', ASCENDING)], unique=True)
            self.db.monitored_prefixes.create_index([('token_hash', ASCENDING)])

    @contextmanager
    def _errors(self, action):
        try:
            yield
        except PyMongoError as e:
            logger.error(f"MongoDB error while trying to {action}: {e}")
            raise StoreUnavailable(f"Failed to {action}: {e}") from e

    def ping(self):
        with self._errors('reach the database'):
            self.db.command('ping')

    # --- Route state ---
    def get_current_route(self, prefix):
        with self._errors(f'read current route for {prefix}'):
            doc = self.db.route_current.find_one({'prefix': prefix})
        if doc is None:
            return None
        return RouteSnapshot(
            prefix=doc['prefix'],
            description=doc.get('description') or '',
            path=doc['path'],
            status=doc['status'],
            as_path=doc.get('as_path'),
            resolved_path=doc.get('resolved_path'),
            last_checked=doc['last_checked'],
        )

    def upsert_current_route(self, snapshot):
        doc = {
            'prefix': snapshot.prefix,
            'description': snapshot.description,
            'path': snapshot.path,
            'as_path': snapshot.as_path,
            'resolved_path': snapshot.resolved_path,
            'status': snapshot.status.value,
            'last_checked': snapshot.last_checked,
        }
        with self._errors(f'write current route for {snapshot.prefix}'):
            self.db.route_current.replace_one({'prefix': snapshot.prefix}, doc, upsert=True)

    def append_history(self, entry):
        doc = {
            'prefix': entry.prefix,
            'description': entry.description,
            'previous_path': entry.previous_path,
            'current_path': entry.current_path,
            'status': entry.status.value,
            'as_path': entry.as_path,
            'resolved_path': entry.resolved_path,
            'detected_at': entry.detected_at,
        }
        with self._errors(f'append history for {entry.prefix}'):
            self.db.route_history.insert_one(doc)

    def get_history(self, prefix=None, limit=50):
        query = {'prefix': prefix} if prefix else {}
        with self._errors('read route history'):
            docs = list(self.db.route_history.find(query).sort('detected_at', DESCENDING).limit(int(limit)))
        return [
            RouteHistoryEntry(
                prefix=doc['prefix'],
                description=doc.get('description') or '',
                previous_path=doc.get('previous_path'),
                current_path=doc.get('current_path'),
                status=RouteStatus(doc['status']),
                as_path=doc.get('as_path'),
                resolved_path=doc.get('resolved_path'),
                detected_at=doc['detected_at'],
            )
            for doc in docs
        ]

    # --- Prefix registry ---
    @staticmethod
    def _doc_to_prefix(doc):
        return MonitoredPrefix(
            prefix=doc['prefix'],
            description=doc.get('description') or '',
            source=PrefixSource.REGISTERED,
            active=bool(doc.get('is_active', True)),
            added_by=doc.get('token_name'),
        )

    def list_monitored_prefixes(self, active_only=True):
        query = {'is_active': True} if active_only else {}
        with self._errors('list monitored prefixes'):
            docs = list(self.db.monitored_prefixes.find(query).sort('prefix', ASCENDING))
        return [self._doc_to_prefix(doc) for doc in docs]

    def add_monitored_prefix(self, prefix, description, token_name, token):
        update = {
            '$set': {
                'description': description,
                'token_name': token_name,
                'token_hash': token_digest(token),
                'is_active': True,
            },
            '$setOnInsert': {'created_at': utcnow()},
        }
        with self._errors(f'register prefix {prefix}'):
            try:
                self.db.monitored_prefixes.update_one({'prefix': prefix}, update, upsert=True)
            except DuplicateKeyError:
                # Lost an upsert race; the document exists now
                self.db.monitored_prefixes.update_one({'prefix': prefix}, update)
        return MonitoredPrefix(prefix, description, PrefixSource.REGISTERED, True, token_name)

    def deactivate_prefix(self, prefix, token=None):
        query = {'prefix': prefix, 'is_active': True}
        if token is not None:
            query['token_hash'] = token_digest(token)
        with self._errors(f'deactivate prefix {prefix}'):
            result = self.db.monitored_prefixes.update_one(query, {'$set': {'is_active': False}})
        return result.modified_count > 0

    def get_prefixes_by_token(self, token):
        query = {'token_hash': token_digest(token), 'is_active': True}
        with self._errors('list prefixes by token'):
            docs = list(self.db.monitored_prefixes.find(query).sort('prefix', ASCENDING))
        return [self._doc_to_prefix(doc) for doc in docs]

    def close(self):
        if self.client is not None:
            self.client.close()
