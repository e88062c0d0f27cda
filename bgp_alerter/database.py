import logging

from pymongo import MongoClient

from .storage.mongo_store import MongoStateStore
from .storage.sqlite_store import SqliteStateStore

logger = logging.getLogger(__name__)


def get_db_connection(uri, db_name):
    """
    Establishes a connection to the MongoDB server and returns the client and
    database objects. Connecting is lazy, so failures surface on first use.
    """
    client = MongoClient(uri, serverSelectionTimeoutMS=5000, tz_aware=True)
    return client, client[db_name]


def get_state_store(config):
    """Builds the state store selected by database.backend."""
    db_config = config['database']
    if db_config['backend'] == 'mongodb':
        logger.debug(f"Using MongoDB state store ({db_config['mongodb_name']})")
        client, db = get_db_connection(db_config['mongodb_uri'], db_config['mongodb_name'])
        return MongoStateStore(db, client=client)

    logger.debug(f"Using SQLite state store at {db_config['sqlite_path']}")
    return SqliteStateStore(db_config['sqlite_path'])
