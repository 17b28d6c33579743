import copy
import sys

from storage import STORAGE_KEYS, LocalStorage

# Default dataset used when local storage has nothing (or nothing valid) for a collection.
# Opening stock is backed by ENTRY transactions so the ledger and the counters agree.

STORES = [
    {"id": "s1", "name": "Loja Centro", "status": "ATIVA"},
    {"id": "s2", "name": "Loja Shopping", "status": "ATIVA"},
    {"id": "s3", "name": "Loja Online", "status": "ATIVA"},
]

CONFIG = {
    "companyName": "Ateliê 7 Divas",
    "logoText": "7 Divas",
    "primaryColor": "#000000",
    "accentColor": "#D4AF37",
    "stores": STORES,
}

USERS = [
    {"id": "u1", "name": "Administração", "email": "admin@7divas.com", "password": "admin123", "role": "ADMIN", "status": "ATIVO"},
    {"id": "u2", "name": "Expedição", "email": "estoque@7divas.com", "password": "estoque123", "role": "ESTOQUE_EXPEDICAO", "status": "ATIVO"},
    {"id": "u3", "name": "Insumos", "email": "insumos@7divas.com", "password": "insumos123", "role": "ENTRADA_INSUMOS", "status": "ATIVO"},
    {"id": "u4", "name": "Financeiro", "email": "financeiro@7divas.com", "password": "financeiro123", "role": "FINANCEIRO", "status": "ATIVO"},
    {"id": "u5", "name": "Gerência", "email": "gerencia@7divas.com", "password": "gerencia123", "role": "GERENCIA", "status": "ATIVO"},
]

PRODUCTS = [
    {"id": "p1", "sku": "7D-VES-001", "name": "Vestido Longo de Seda", "category": "Vestidos", "unit": "un", "costPrice": 120.0, "salePrice": 289.9, "minStock": 5, "currentStock": 12},
    {"id": "p2", "sku": "7D-BLU-002", "name": "Blusa de Cetim", "category": "Blusas", "unit": "un", "costPrice": 45.0, "salePrice": 119.9, "minStock": 8, "currentStock": 20},
    {"id": "p3", "sku": "7D-SAI-003", "name": "Saia Midi Plissada", "category": "Saias", "unit": "un", "costPrice": 60.0, "salePrice": 149.9, "minStock": 5, "currentStock": 4},
    {"id": "p4", "sku": "7D-CON-004", "name": "Conjunto Alfaiataria", "category": "Conjuntos", "unit": "un", "costPrice": 150.0, "salePrice": 389.9, "minStock": 3, "currentStock": 6},
    {"id": "p5", "sku": "7D-ACE-005", "name": "Cinto de Couro", "category": "Acessórios", "unit": "un", "costPrice": 25.0, "salePrice": 69.9, "minStock": 10, "currentStock": 30},
]

RAW_MATERIALS = [
    {"id": "rm1", "item": "Tecido de Seda", "quantity": 30.0, "value": 1350.0, "supplier": "Tecidos Brás", "date": "2026-01-10", "userId": "u3", "unit": "m"},
    {"id": "rm2", "item": "Linha de Poliéster", "quantity": 50.0, "value": 175.0, "supplier": "Aviamentos Sul", "date": "2026-01-12", "userId": "u3", "unit": "un"},
]

TRANSACTIONS = [
    {"id": "tx1", "productId": "p1", "type": "ENTRY", "quantity": 15, "unitPrice": 120.0, "totalValue": 1800.0, "timestamp": "2026-01-05T10:00:00.000Z", "userId": "u2"},
    {"id": "tx2", "productId": "p2", "type": "ENTRY", "quantity": 20, "unitPrice": 45.0, "totalValue": 900.0, "timestamp": "2026-01-05T10:05:00.000Z", "userId": "u2"},
    {"id": "tx3", "productId": "p3", "type": "ENTRY", "quantity": 10, "unitPrice": 60.0, "totalValue": 600.0, "timestamp": "2026-01-05T10:10:00.000Z", "userId": "u2"},
    {"id": "tx4", "productId": "p4", "type": "ENTRY", "quantity": 6, "unitPrice": 150.0, "totalValue": 900.0, "timestamp": "2026-01-05T10:15:00.000Z", "userId": "u2"},
    {"id": "tx5", "productId": "p5", "type": "ENTRY", "quantity": 30, "unitPrice": 25.0, "totalValue": 750.0, "timestamp": "2026-01-05T10:20:00.000Z", "userId": "u2"},
    {"id": "tx6", "rawMaterialId": "rm1", "type": "MATERIA_PRIMA", "quantity": 30.0, "unitPrice": 45.0, "totalValue": 1350.0, "timestamp": "2026-01-10T09:00:00.000Z", "userId": "u3"},
    {"id": "tx7", "rawMaterialId": "rm2", "type": "MATERIA_PRIMA", "quantity": 50.0, "unitPrice": 3.5, "totalValue": 175.0, "timestamp": "2026-01-12T09:00:00.000Z", "userId": "u3"},
    {"id": "tx8", "productId": "p1", "type": "SALE", "quantity": 3, "unitPrice": 289.9, "totalValue": 869.7, "timestamp": "2026-01-15T14:30:00.000Z", "userId": "u2", "storeId": "s1"},
    {"id": "tx9", "productId": "p3", "type": "SALE", "quantity": 6, "unitPrice": 149.9, "totalValue": 899.4, "timestamp": "2026-01-16T16:45:00.000Z", "userId": "u2", "storeId": "s2"},
]

_DEFAULTS = {
    'config': CONFIG,
    'users': USERS,
    'products': PRODUCTS,
    'rawMaterials': RAW_MATERIALS,
    'transactions': TRANSACTIONS,
}


def default_rows(name):
    """Fresh copy of the default rows for a collection name (wire names)."""
    return copy.deepcopy(_DEFAULTS[name])


def reset(storage):
    values = {STORAGE_KEYS[name]: default_rows(name) for name in _DEFAULTS}
    values[STORAGE_KEYS['stores']] = copy.deepcopy(STORES)
    storage.write_many(values)


if __name__ == "__main__":
    url = sys.argv[1] if len(sys.argv) > 1 else 'sqlite:///7divas_local.db'
    print(f"Resetting local storage at {url} to the default dataset...")
    reset(LocalStorage(url))
    print("Seeding complete.")
