import json
import logging
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import List, Optional

logger = logging.getLogger(__name__)


class RecordError(ValueError):
    pass


class UserRole(str, Enum):
    ADMIN = 'ADMIN'
    ESTOQUE_EXPEDICAO = 'ESTOQUE_EXPEDICAO'  # stock / dispatch
    ENTRADA_INSUMOS = 'ENTRADA_INSUMOS'  # raw-material intake
    FINANCEIRO = 'FINANCEIRO'
    GERENCIA = 'GERENCIA'
    TI = 'TI'  # IT maintenance


USER_STATUSES = ('ATIVO', 'INATIVO')
STORE_STATUSES = ('ATIVA', 'INATIVA')
TRANSACTION_TYPES = ('ENTRY', 'EXIT', 'PRODUCTION', 'SALE', 'MATERIA_PRIMA')


def iso_timestamp(dt):
    # Same shape as JavaScript's toISOString(), which the remote sheet already holds
    dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f'{dt.microsecond // 1000:03d}Z'


# Spreadsheet cells come back loosely typed: numbers as text, text as numbers,
# nested lists as JSON strings. Every reader goes through these helpers.

def _text(row, key, default=''):
    val = row.get(key)
    if val is None:
        return default
    if isinstance(val, (dict, list)):
        raise RecordError(f"Field '{key}' must be a scalar")
    if isinstance(val, float) and val.is_integer():
        val = int(val)
    return str(val)


def _optional_text(row, key):
    val = row.get(key)
    if val is None or val == '':
        return None
    return _text(row, key)


def _number(row, key, default=0.0):
    val = row.get(key)
    if val is None or val == '':
        return default
    if isinstance(val, bool):
        raise RecordError(f"Field '{key}' must be numeric")
    if isinstance(val, (int, float)):
        return float(val)
    try:
        return float(str(val).strip().replace(',', '.'))
    except ValueError:
        raise RecordError(f"Field '{key}' must be numeric, got {val!r}")


def _optional_number(row, key):
    if row.get(key) is None or row.get(key) == '':
        return None
    return _number(row, key)


def _integer(row, key, default=0):
    num = _number(row, key, float(default))
    if not num.is_integer():
        raise RecordError(f"Field '{key}' must be a whole number, got {num}")
    return int(num)


def _choice(row, key, choices, default=None):
    val = _text(row, key, default or '')
    if val not in choices:
        raise RecordError(f"Field '{key}' must be one of {', '.join(choices)}, got {val!r}")
    return val


def _require_id(row):
    if not isinstance(row, dict):
        raise RecordError(f"Expected an object, got {type(row).__name__}")
    record_id = _text(row, 'id')
    if not record_id:
        raise RecordError("Record has no id")
    return record_id


def _put_optional(data, key, val):
    if val is not None:
        data[key] = val
    return data


@dataclass
class User:
    id: str
    name: str
    email: str
    role: UserRole
    status: str = 'ATIVO'
    password: Optional[str] = None
    avatar: Optional[str] = None

    @property
    def is_active(self):
        return self.status == 'ATIVO'

    def to_dict(self, include_password=True):
        data = {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role.value,
            'status': self.status,
        }
        if include_password:
            _put_optional(data, 'password', self.password)
        return _put_optional(data, 'avatar', self.avatar)

    @classmethod
    def from_dict(cls, row):
        record_id = _require_id(row)
        role = _text(row, 'role')
        try:
            role = UserRole(role)
        except ValueError:
            raise RecordError(f"Unknown role {role!r} for user {record_id}")
        email = _text(row, 'email').strip()
        if not email:
            raise RecordError(f"User {record_id} has no email")
        return cls(
            id=record_id,
            name=_text(row, 'name'),
            email=email,
            role=role,
            status=_choice(row, 'status', USER_STATUSES, 'ATIVO'),
            password=_optional_text(row, 'password'),
            avatar=_optional_text(row, 'avatar'),
        )


@dataclass
class Store:
    id: str
    name: str
    status: str = 'ATIVA'

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'status': self.status}

    @classmethod
    def from_dict(cls, row):
        return cls(
            id=_require_id(row),
            name=_text(row, 'name'),
            status=_choice(row, 'status', STORE_STATUSES, 'ATIVA'),
        )


@dataclass
class Product:
    id: str
    sku: str
    name: str
    category: str = ''
    unit: str = 'un'
    cost_price: float = 0.0
    sale_price: float = 0.0
    min_stock: int = 0
    current_stock: int = 0
    image_url: Optional[str] = None

    def to_dict(self):
        data = {
            'id': self.id,
            'sku': self.sku,
            'name': self.name,
            'category': self.category,
            'unit': self.unit,
            'costPrice': self.cost_price,
            'salePrice': self.sale_price,
            'minStock': self.min_stock,
            'currentStock': self.current_stock,
        }
        return _put_optional(data, 'imageUrl', self.image_url)

    @classmethod
    def from_dict(cls, row):
        record_id = _require_id(row)
        current_stock = _integer(row, 'currentStock')
        if current_stock < 0:
            raise RecordError(f"Product {record_id} has negative stock")
        return cls(
            id=record_id,
            sku=_text(row, 'sku'),
            name=_text(row, 'name'),
            category=_text(row, 'category'),
            unit=_text(row, 'unit', 'un'),
            cost_price=_number(row, 'costPrice'),
            sale_price=_number(row, 'salePrice'),
            min_stock=_integer(row, 'minStock'),
            current_stock=current_stock,
            image_url=_optional_text(row, 'imageUrl'),
        )


@dataclass
class RawMaterialEntry:
    id: str
    item: str
    quantity: float
    supplier: str
    date: str
    user_id: str
    value: Optional[float] = None
    unit: Optional[str] = None

    def to_dict(self):
        data = {
            'id': self.id,
            'item': self.item,
            'quantity': self.quantity,
            'supplier': self.supplier,
            'date': self.date,
            'userId': self.user_id,
        }
        _put_optional(data, 'value', self.value)
        return _put_optional(data, 'unit', self.unit)

    @classmethod
    def from_dict(cls, row):
        return cls(
            id=_require_id(row),
            item=_text(row, 'item'),
            quantity=_number(row, 'quantity'),
            supplier=_text(row, 'supplier'),
            date=_text(row, 'date'),
            user_id=_text(row, 'userId', 'sys'),
            value=_optional_number(row, 'value'),
            unit=_optional_text(row, 'unit'),
        )


@dataclass(frozen=True)
class Transaction:
    id: str
    type: str
    quantity: float
    unit_price: float
    total_value: float
    timestamp: str
    user_id: str
    product_id: Optional[str] = None
    store_id: Optional[str] = None
    raw_material_id: Optional[str] = None

    def to_dict(self):
        data = {
            'id': self.id,
            'type': self.type,
            'quantity': self.quantity,
            'unitPrice': self.unit_price,
            'totalValue': self.total_value,
            'timestamp': self.timestamp,
            'userId': self.user_id,
        }
        _put_optional(data, 'productId', self.product_id)
        _put_optional(data, 'storeId', self.store_id)
        return _put_optional(data, 'rawMaterialId', self.raw_material_id)

    @classmethod
    def from_dict(cls, row):
        quantity = _number(row, 'quantity')
        unit_price = _number(row, 'unitPrice')
        return cls(
            id=_require_id(row),
            type=_choice(row, 'type', TRANSACTION_TYPES),
            quantity=int(quantity) if quantity.is_integer() else quantity,
            unit_price=unit_price,
            total_value=_number(row, 'totalValue', quantity * unit_price),
            timestamp=_text(row, 'timestamp'),
            user_id=_text(row, 'userId', 'sys'),
            product_id=_optional_text(row, 'productId'),
            store_id=_optional_text(row, 'storeId'),
            raw_material_id=_optional_text(row, 'rawMaterialId'),
        )


@dataclass
class AppConfig:
    company_name: str
    logo_text: str
    primary_color: str
    accent_color: str
    stores: List[Store] = field(default_factory=list)
    logo_url: Optional[str] = None
    gas_web_app_url: Optional[str] = None

    def to_dict(self):
        data = {
            'companyName': self.company_name,
            'logoText': self.logo_text,
            'primaryColor': self.primary_color,
            'accentColor': self.accent_color,
            'stores': [s.to_dict() for s in self.stores],
        }
        _put_optional(data, 'logoUrl', self.logo_url)
        return _put_optional(data, 'gasWebAppUrl', self.gas_web_app_url)

    @classmethod
    def from_dict(cls, row):
        if not isinstance(row, dict):
            raise RecordError("Config must be an object")
        stores = row.get('stores') or []
        if isinstance(stores, str):
            # the remote sheet keeps nested values as JSON text
            try:
                stores = json.loads(stores)
            except ValueError:
                raise RecordError("Config stores is not valid JSON")
        if not isinstance(stores, list):
            raise RecordError("Config stores must be a list")
        return cls(
            company_name=_text(row, 'companyName'),
            logo_text=_text(row, 'logoText'),
            primary_color=_text(row, 'primaryColor', '#000000'),
            accent_color=_text(row, 'accentColor', '#D4AF37'),
            stores=[Store.from_dict(s) for s in stores],
            logo_url=_optional_text(row, 'logoUrl'),
            gas_web_app_url=_optional_text(row, 'gasWebAppUrl'),
        )


def decode_collection(record_cls, rows, source='remote', strict=False):
    """Decode a list of loose row objects.

    Rows that fail validation are dropped with a warning, or with ``strict``
    the first one raises RecordError naming the row.
    """
    if not isinstance(rows, list):
        raise RecordError(f"Expected a list of {record_cls.__name__} rows")
    records = []
    for position, row in enumerate(rows):
        try:
            records.append(record_cls.from_dict(row))
        except RecordError as e:
            if strict:
                row_id = row.get('id') if isinstance(row, dict) else None
                raise RecordError(f"{record_cls.__name__} row {position + 1} (id {row_id!r}) from {source}: {e}") from e
            logger.warning("Skipping %s row from %s: %s", record_cls.__name__, source, e)
    return records
