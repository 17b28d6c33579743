import argparse

from records import AppConfig, Product, RawMaterialEntry, RecordError, Store, Transaction, User, decode_collection
from storage import STORAGE_KEYS, LocalStorage

RECORDS = {
    'users': User,
    'products': Product,
    'transactions': Transaction,
    'stores': Store,
    'rawMaterials': RawMaterialEntry,
}


def inspect(storage):
    """Read-only report of what local storage holds. Returns the number of problems found."""
    problems = 0
    decoded = {}
    for name, record_cls in RECORDS.items():
        key = STORAGE_KEYS[name]
        rows = storage.get_json(key)
        if rows is None:
            print(f"{key}: missing (defaults will be seeded on next start)")
            decoded[name] = []
            continue
        if not isinstance(rows, list):
            print(f"{key}: !!! not a list")
            decoded[name] = []
            problems += 1
            continue
        decoded[name] = decode_collection(record_cls, rows, source='local storage')
        skipped = len(rows) - len(decoded[name])
        print(f"{key}: {len(decoded[name])} records" + (f", {skipped} invalid" if skipped else ""))
        problems += skipped

    config = storage.get_json(STORAGE_KEYS['config'])
    try:
        config = AppConfig.from_dict(config) if config is not None else None
    except RecordError as e:
        print(f"{STORAGE_KEYS['config']}: invalid ({e})")
        problems += 1
        config = None
    if config:
        print(f"Company: {config.company_name} | endpoint: {config.gas_web_app_url or '(none)'}")
        config_ids = sorted(s.id for s in config.stores)
        store_ids = sorted(s.id for s in decoded['stores'])
        if decoded['stores'] and config_ids != store_ids:
            print(f"!!! config stores {config_ids} do not match stores {store_ids}")
            problems += 1

    print("\nLow stock:")
    for p in decoded['products']:
        if p.current_stock <= p.min_stock:
            print(f"  {p.sku} {p.name}: {p.current_stock} (min {p.min_stock})")

    print("\nLedger check:")
    for p in decoded['products']:
        ledger = 0
        for t in decoded['transactions']:
            if t.product_id != p.id:
                continue
            if t.type == 'ENTRY':
                ledger += t.quantity
            elif t.type in ('SALE', 'EXIT'):
                ledger -= t.quantity
        if ledger != p.current_stock:
            print(f"  !!! {p.id} {p.name}: counter {p.current_stock}, ledger {ledger}")
            problems += 1

    emails = [u.email.lower() for u in decoded['users']]
    for email in sorted({e for e in emails if emails.count(e) > 1}):
        print(f"!!! duplicate login email {email}")
        problems += 1

    print(f"\n{problems} problem(s) found.")
    return problems


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Inspect the dashboard's local storage")
    parser.add_argument('url', nargs='?', default='sqlite:///7divas_local.db')
    args = parser.parse_args()
    raise SystemExit(1 if inspect(LocalStorage(args.url)) else 0)
