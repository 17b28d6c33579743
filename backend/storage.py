import json
import logging

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

KEY_PREFIX = '7divas_'

# One entry per collection plus the config singleton
STORAGE_KEYS = {
    'config': KEY_PREFIX + 'config',
    'users': KEY_PREFIX + 'users',
    'products': KEY_PREFIX + 'products',
    'stores': KEY_PREFIX + 'stores',
    'rawMaterials': KEY_PREFIX + 'raw',
    'transactions': KEY_PREFIX + 'tx',
}

metadata = MetaData()

local_storage = Table(
    'local_storage', metadata,
    Column('key', String(120), primary_key=True),
    Column('value', Text, nullable=False),
)


class LocalStorage:
    """Durable key/value store holding JSON documents, one per key."""

    def __init__(self, url='sqlite:///7divas_local.db', engine=None):
        self.engine = engine or create_engine(url, future=True)
        metadata.create_all(self.engine)

    def get(self, key):
        with self.engine.connect() as conn:
            row = conn.execute(select(local_storage.c.value).where(local_storage.c.key == key)).first()
        return row[0] if row else None

    def get_json(self, key):
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Stored value under %s is not valid JSON, ignoring it", key)
            return None

    def write_many(self, values):
        """Write several JSON documents in one database transaction."""
        try:
            with self.engine.begin() as conn:
                for key, value in values.items():
                    payload = json.dumps(value, ensure_ascii=False)
                    # overwrite in place, older entries are never appended to
                    updated = conn.execute(
                        local_storage.update().where(local_storage.c.key == key).values(value=payload)
                    ).rowcount
                    if not updated:
                        conn.execute(local_storage.insert().values(key=key, value=payload))
        except SQLAlchemyError:
            logger.exception("Failed to persist %s", ', '.join(values))
            raise
