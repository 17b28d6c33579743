import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

import seed_data
from records import (AppConfig, Product, RawMaterialEntry, RecordError, Store, Transaction, User,
                     STORE_STATUSES, USER_STATUSES, decode_collection, iso_timestamp)
from storage import STORAGE_KEYS

logger = logging.getLogger(__name__)

SYSTEM_USER_ID = 'sys'
MOVEMENT_KINDS = ('ENTRY', 'SALE', 'EXIT')
OUTGOING_KINDS = ('SALE', 'EXIT')

# wire name -> (attribute, record class)
COLLECTIONS = {
    'users': ('users', User),
    'products': ('products', Product),
    'transactions': ('transactions', Transaction),
    'stores': ('stores', Store),
    'rawMaterials': ('raw_materials', RawMaterialEntry),
}


class DashboardError(Exception):
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(DashboardError):
    pass


class NotFoundError(DashboardError):
    status_code = 404


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class InsufficientStockError(DashboardError):
    def __init__(self, product, requested):
        super().__init__(f"Insufficient stock! Only {product.current_stock} units of {product.name} available.")
        self.available = product.current_stock
        self.requested = requested


def _decode(record_cls, row):
    try:
        return record_cls.from_dict(row)
    except RecordError as e:
        raise ValidationError(str(e))


class StateStore:
    """Holds the six collections and the config singleton for every consumer.

    Reads come from memory. Each mutation is written to local storage before
    the call returns, then listeners (the sync engine) are told about it.
    """

    def __init__(self, storage, clock=None):
        self.storage = storage
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._listeners = []
        self.revision = 0
        self.last_error = None
        self._load()

    # ----- Loading / persistence -----

    def _load(self):
        self.config = self._load_config()
        self.users = self._load_collection('users', User)
        self.products = self._load_collection('products', Product)
        self.raw_materials = self._load_collection('rawMaterials', RawMaterialEntry)
        self.transactions = self._load_collection('transactions', Transaction)

        stored_stores = self.storage.get_json(STORAGE_KEYS['stores'])
        if isinstance(stored_stores, list):
            self.stores = decode_collection(Store, stored_stores, source='local storage')
        else:
            self.stores = [Store(**vars(s)) for s in self.config.stores]
        if not self.stores:
            self.stores = decode_collection(Store, seed_data.STORES, source='seed data')
        self.config.stores = [Store(**vars(s)) for s in self.stores]

        self._persist(['config'] + list(COLLECTIONS))
        logger.info("Loaded %d users, %d products, %d transactions, %d stores, %d raw materials",
                    len(self.users), len(self.products), len(self.transactions),
                    len(self.stores), len(self.raw_materials))

    def _load_config(self):
        stored = self.storage.get_json(STORAGE_KEYS['config'])
        if stored is not None:
            try:
                return AppConfig.from_dict(stored)
            except RecordError as e:
                logger.warning("Stored config is invalid (%s), using defaults", e)
        return AppConfig.from_dict(seed_data.default_rows('config'))

    def _load_collection(self, name, record_cls):
        stored = self.storage.get_json(STORAGE_KEYS[name])
        if isinstance(stored, list):
            return decode_collection(record_cls, stored, source='local storage')
        if stored is not None:
            logger.warning("Stored %s is not a list, using defaults", name)
        return decode_collection(record_cls, seed_data.default_rows(name), source='seed data')

    def _serialize(self, name):
        if name == 'config':
            return self.config.to_dict()
        attr = COLLECTIONS[name][0]
        return [r.to_dict() for r in getattr(self, attr)]

    def _persist(self, names):
        self.storage.write_many({STORAGE_KEYS[n]: self._serialize(n) for n in names})

    @contextmanager
    def _mutation(self, *names):
        with self._lock:
            yield
            self.revision += 1
            self._persist(names)
        self._emit('mutation')

    # ----- Listeners -----

    def subscribe(self, callback):
        self._listeners.append(callback)

    def _emit(self, kind):
        for callback in list(self._listeners):
            callback(kind)

    # ----- Reads -----

    def snapshot(self):
        with self._lock:
            return {name: self._serialize(name) for name in
                    ('users', 'products', 'transactions', 'stores', 'rawMaterials', 'config')}

    def versioned_snapshot(self):
        with self._lock:
            return self.revision, self.snapshot()

    @property
    def endpoint_url(self):
        return self.config.gas_web_app_url

    def find_product(self, product_id):
        return next((p for p in self.products if p.id == product_id), None)

    def find_store(self, store_id):
        return next((s for s in self.stores if s.id == store_id), None)

    def find_user(self, user_id):
        return next((u for u in self.users if u.id == user_id), None)

    def find_user_by_email(self, email):
        email = (email or '').strip().lower()
        return next((u for u in self.users if u.email.lower() == email), None)

    def low_stock_products(self):
        return [p for p in self.products if p.current_stock <= p.min_stock]

    def ledger_stock(self, product_id):
        total = 0
        for tx in self.transactions:
            if tx.product_id != product_id:
                continue
            if tx.type == 'ENTRY':
                total += tx.quantity
            elif tx.type in OUTGOING_KINDS:
                total -= tx.quantity
        return total

    def stock_discrepancies(self):
        with self._lock:
            result = []
            for p in self.products:
                ledger = self.ledger_stock(p.id)
                if ledger != p.current_stock:
                    result.append({"productId": p.id, "name": p.name,
                                   "currentStock": p.current_stock, "ledgerStock": ledger})
            return result

    def _now(self):
        return self._clock()

    def _new_id(self, prefix, records):
        taken = {r.id for r in records}
        stamp = int(self._now().timestamp() * 1000)
        while f"{prefix}{stamp}" in taken:
            stamp += 1
        return f"{prefix}{stamp}"

    # ----- Inventory -----

    def record_movement(self, product_id, quantity, kind, store_id=None, user_id=None):
        kind = (kind or '').upper()
        if kind not in MOVEMENT_KINDS:
            raise ValidationError(f"Invalid movement type {kind!r}. Use one of {', '.join(MOVEMENT_KINDS)}")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Quantity must be a positive whole number")

        with self._mutation('products', 'transactions'):
            product = self.find_product(product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            if kind in OUTGOING_KINDS and product.current_stock < quantity:
                raise InsufficientStockError(product, quantity)
            if store_id and self.find_store(store_id) is None:
                raise ValidationError(f"Store {store_id} not found")

            unit_price = product.sale_price if kind == 'SALE' else product.cost_price
            tx = Transaction(
                id=self._new_id('tx', self.transactions),
                product_id=product_id,
                type=kind,
                quantity=quantity,
                unit_price=unit_price,
                total_value=round(quantity * unit_price, 2),
                timestamp=iso_timestamp(self._now()),
                user_id=user_id or SYSTEM_USER_ID,
                store_id=store_id or None,
            )
            # both assignments happen together or the exception above left everything untouched
            product.current_stock += quantity if kind == 'ENTRY' else -quantity
            self.transactions.append(tx)

        logger.info("%s of %s x %s by %s, stock now %s", kind, quantity, product_id, tx.user_id, product.current_stock)
        return tx

    def process_inventory_change(self, product_id, quantity, kind, store_id=None, user_id=None):
        try:
            self.record_movement(product_id, quantity, kind, store_id=store_id, user_id=user_id)
        except DashboardError as e:
            self.last_error = e.message
            logger.warning("Inventory change rejected: %s", e.message)
            return False
        self.last_error = None
        return True

    # ----- Products -----

    def save_product(self, data, user_id=None):
        row = dict(data)
        with self._mutation('products', 'transactions'):
            existing = self.find_product(row.get('id')) if row.get('id') else None
            if existing is not None:
                # stock only moves through record_movement
                row = {**existing.to_dict(), **row, 'currentStock': existing.current_stock}
                product = _decode(Product, row)
                self.products[self.products.index(existing)] = product
            else:
                row['id'] = row.get('id') or self._new_id('p', self.products)
                product = _decode(Product, row)
                self.products.append(product)
                if product.current_stock > 0:
                    self.transactions.append(Transaction(
                        id=self._new_id('tx', self.transactions),
                        product_id=product.id,
                        type='ENTRY',
                        quantity=product.current_stock,
                        unit_price=product.cost_price,
                        total_value=round(product.current_stock * product.cost_price, 2),
                        timestamp=iso_timestamp(self._now()),
                        user_id=user_id or SYSTEM_USER_ID,
                    ))
        return product

    def delete_product(self, product_id):
        with self._mutation('products'):
            product = self.find_product(product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            self.products.remove(product)

    # ----- Raw materials -----

    def find_raw_material(self, entry_id):
        return next((r for r in self.raw_materials if r.id == entry_id), None)

    def add_raw_material(self, data, user_id=None):
        row = dict(data)
        with self._mutation('rawMaterials', 'transactions'):
            row['id'] = self._new_id('rm', self.raw_materials)
            row.setdefault('userId', user_id or SYSTEM_USER_ID)
            row.setdefault('date', self._now().date().isoformat())
            entry = _decode(RawMaterialEntry, row)
            if entry.quantity <= 0:
                raise ValidationError("Quantity must be positive")
            value = entry.value or 0.0
            self.raw_materials.append(entry)
            self.transactions.append(Transaction(
                id=self._new_id('tx', self.transactions),
                raw_material_id=entry.id,
                type='MATERIA_PRIMA',
                quantity=entry.quantity,
                unit_price=round(value / entry.quantity, 2),
                total_value=value,
                timestamp=iso_timestamp(self._now()),
                user_id=entry.user_id,
            ))
        return entry

    def update_raw_material(self, data):
        with self._mutation('rawMaterials'):
            existing = self.find_raw_material(data.get('id'))
            if existing is None:
                raise NotFoundError(f"Raw material {data.get('id')} not found")
            entry = _decode(RawMaterialEntry, {**existing.to_dict(), **data})
            self.raw_materials[self.raw_materials.index(existing)] = entry
        return entry

    def delete_raw_material(self, entry_id):
        with self._mutation('rawMaterials'):
            existing = self.find_raw_material(entry_id)
            if existing is None:
                raise NotFoundError(f"Raw material {entry_id} not found")
            self.raw_materials.remove(existing)

    # ----- Users -----

    def save_user(self, data):
        row = dict(data)
        with self._mutation('users'):
            existing = self.find_user(row.get('id')) if row.get('id') else None
            if existing is not None:
                if not row.get('password'):
                    row.pop('password', None)
                row = {**existing.to_dict(), **row}
            else:
                row['id'] = row.get('id') or self._new_id('u', self.users)
                row.setdefault('status', 'ATIVO')
            user = _decode(User, row)
            clash = self.find_user_by_email(user.email)
            if clash is not None and clash.id != user.id:
                raise ValidationError(f"Email {user.email} is already in use")
            if existing is not None:
                self.users[self.users.index(existing)] = user
            else:
                self.users.append(user)
        return user

    def set_user_status(self, user_id, status):
        if status not in USER_STATUSES:
            raise ValidationError(f"Status must be one of {', '.join(USER_STATUSES)}")
        with self._mutation('users'):
            user = self.find_user(user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            user.status = status
        return user

    # ----- Stores / config -----

    def _sync_config_stores(self):
        self.config.stores = [Store(**vars(s)) for s in self.stores]

    def save_store(self, data):
        row = dict(data)
        with self._mutation('stores', 'config'):
            existing = self.find_store(row.get('id')) if row.get('id') else None
            if existing is not None:
                store = _decode(Store, {**existing.to_dict(), **row})
                self.stores[self.stores.index(existing)] = store
            else:
                row['id'] = row.get('id') or self._new_id('s', self.stores)
                store = _decode(Store, row)
                self.stores.append(store)
            self._sync_config_stores()
        return store

    def _check_stores(self, rows):
        if not isinstance(rows, list):
            raise ValidationError("Stores must be a list")
        stores = [_decode(Store, r) for r in rows]
        if not stores:
            raise ValidationError("At least one store is required")
        if len({s.id for s in stores}) != len(stores):
            raise ValidationError("Store ids must be unique")
        return stores

    def set_stores(self, rows):
        stores = self._check_stores(rows)
        with self._mutation('stores', 'config'):
            self.stores = stores
            self._sync_config_stores()
        return stores

    def set_store_status(self, store_id, status):
        if status not in STORE_STATUSES:
            raise ValidationError(f"Status must be one of {', '.join(STORE_STATUSES)}")
        store = self.find_store(store_id)
        if store is None:
            raise NotFoundError(f"Store {store_id} not found")
        return self.save_store({'id': store_id, 'status': status})

    def update_config(self, fields):
        """Merge ``fields`` into the config, all or nothing.

        Only a change to the shared data counts as a mutation (and so
        schedules a push). Changing the endpoint alone just emits "config",
        so the new remote is pulled before anything is pushed to it.
        """
        fields = dict(fields)
        stores = fields.pop('stores', None)
        if stores is not None:
            stores = self._check_stores(stores)

        with self._lock:
            previous = self.config
            row = {**previous.to_dict(), **fields}
            if not row.get('gasWebAppUrl'):
                row.pop('gasWebAppUrl', None)
            config = _decode(AppConfig, row)
            config.stores = [Store(**vars(s)) for s in (stores if stores is not None else previous.stores)]

            endpoint_changed = config.gas_web_app_url != previous.gas_web_app_url
            shared = {**config.to_dict(), 'gasWebAppUrl': None}
            data_changed = shared != {**previous.to_dict(), 'gasWebAppUrl': None}
            if not data_changed and not endpoint_changed:
                return previous

            if stores is not None:
                self.stores = stores
            self.config = config
            if data_changed:
                self.revision += 1
            self._persist(['stores', 'config'] if stores is not None else ['config'])

        if data_changed:
            self._emit('mutation')
        if endpoint_changed:
            logger.info("Remote endpoint changed to %s", config.gas_web_app_url or '(none)')
            self._emit('config')
        return config

    def set_endpoint(self, url):
        return self.update_config({'gasWebAppUrl': (url or '').strip() or None})

    # ----- Remote merge -----

    def apply_remote(self, data, expected_revision=None):
        """Replace local collections with a pulled dataset.

        Returns False, leaving local state untouched, when the payload has no
        users, is malformed, or local edits happened since ``expected_revision``.
        """
        if not isinstance(data, dict):
            logger.warning("Remote payload is not an object, ignoring it")
            return False
        if not isinstance(data.get('users'), list) or not data['users']:
            logger.info("Remote payload has no users, keeping local copy")
            return False
        for name in ('products', 'transactions', 'stores', 'rawMaterials'):
            if not isinstance(data.get(name), list):
                logger.warning("Remote payload has no %s list, ignoring it", name)
                return False

        # one bad cell rejects the whole pull: a dropped row would be erased remotely by the next push
        try:
            decoded = {name: decode_collection(cls, data[name], strict=True)
                       for name, (_, cls) in COLLECTIONS.items()}
        except RecordError as e:
            logger.warning("Remote payload rejected, keeping local copy: %s", e)
            return False

        with self._lock:
            if expected_revision is not None and expected_revision != self.revision:
                logger.info("Local edits happened during pull, discarding remote data")
                return False

            for name, (attr, _) in COLLECTIONS.items():
                setattr(self, attr, decoded[name])

            remote_config = data.get('config')
            if isinstance(remote_config, dict) and remote_config.get('companyName'):
                merged = {**self.config.to_dict(), **remote_config}
                merged.pop('gasWebAppUrl', None)
                if self.config.gas_web_app_url:
                    merged['gasWebAppUrl'] = self.config.gas_web_app_url
                try:
                    self.config = AppConfig.from_dict(merged)
                except RecordError as e:
                    logger.warning("Remote config is invalid (%s), keeping local config", e)

            if not self.stores:
                self.stores = [Store(**vars(s)) for s in self.config.stores]
            self._sync_config_stores()
            self._persist(['config'] + list(COLLECTIONS))
        self._emit('remote')
        return True
