import json
import logging
import math
import os
from datetime import datetime, timezone

from dotenv import load_dotenv
from flask import Blueprint, Flask, jsonify, request
from flask_cors import CORS

from models import db, Sheet, SheetRow
from records import iso_timestamp

load_dotenv()

logger = logging.getLogger(__name__)

sheets_bp = Blueprint("sheets", __name__)

basedir = os.path.abspath(os.path.dirname(__file__))

# collection key -> sheet name
SHEETS = {
    'users': 'USERS',
    'products': 'PRODUCTS',
    'transactions': 'TRANSACTIONS',
    'stores': 'STORES',
    'rawMaterials': 'RAW_MATERIALS',
    'config': 'CONFIG',
}

DEFAULT_HEADERS = {
    'PRODUCTS': ['id', 'sku', 'name', 'category', 'unit', 'costPrice', 'salePrice', 'minStock', 'currentStock', 'imageUrl'],
    'USERS': ['id', 'name', 'email', 'password', 'role', 'status', 'avatar'],
    'STORES': ['id', 'name', 'status'],
}

NUMERIC_HINTS = ('price', 'stock', 'quantity')


def coerce_cell(header, val):
    # Text that should have been a number, in the columns where that matters
    if isinstance(val, str) and val.strip() != "":
        if any(hint in header.lower() for hint in NUMERIC_HINTS):
            try:
                num = float(val)
            except ValueError:
                return val
            if not math.isfinite(num):
                return val
            return int(num) if num.is_integer() else num
    return val


def to_cell(val):
    if val is None:
        return ''
    if isinstance(val, (dict, list)):
        return json.dumps(val, ensure_ascii=False)
    return val


def get_or_create_sheet(name):
    sheet = Sheet.query.filter_by(name=name).first()
    if not sheet:
        sheet = Sheet(name=name)
        # basic headers when the sheet is new
        sheet.set_headers(DEFAULT_HEADERS.get(name, []))
        db.session.add(sheet)
        db.session.flush()
    return sheet


def get_sheet_data(name):
    sheet = get_or_create_sheet(name)
    headers = sheet.header_list
    if not headers or not sheet.rows:
        return []
    result = []
    for row in sheet.rows:
        cells = row.cell_list
        obj = {}
        for i, h in enumerate(headers):
            obj[h] = coerce_cell(h, cells[i] if i < len(cells) else '')
        result.append(obj)
    return result


def update_sheet(name, data):
    """Clear the sheet, then write ``data`` as rows under one header line."""
    if not isinstance(data, list) or any(not isinstance(item, dict) for item in data):
        raise ValueError(f"Rows for {name} must be a list of objects")
    sheet = get_or_create_sheet(name)
    SheetRow.query.filter_by(sheet_id=sheet.id).delete()
    db.session.expire(sheet, ['rows'])
    sheet.set_headers([])
    if not data:
        return
    # optional fields may first appear on a later row, so collect every key
    headers = []
    for item in data:
        headers.extend(k for k in item if k not in headers)
    sheet.set_headers(headers)
    for position, item in enumerate(data):
        row = SheetRow(sheet_id=sheet.id, position=position)
        row.set_cells([to_cell(item.get(h)) for h in headers])
        db.session.add(row)


@sheets_bp.route('/exec', methods=['GET'])
def do_get():
    action = request.args.get('action')
    if action == 'getAllData':
        try:
            data = {
                "users": get_sheet_data('USERS'),
                "products": get_sheet_data('PRODUCTS'),
                "transactions": get_sheet_data('TRANSACTIONS'),
                "config": (get_sheet_data('CONFIG') or [{}])[0],
                "stores": get_sheet_data('STORES'),
                "rawMaterials": get_sheet_data('RAW_MATERIALS'),
            }
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error("getAllData failed: %s", e)
            return jsonify({"success": False, "error": str(e)}), 500
        return jsonify(data), 200
    return jsonify({"status": "active", "message": "API 7 Divas Online"}), 200


@sheets_bp.route('/exec', methods=['POST'])
def do_post():
    # Clients send text/plain to dodge CORS preflight, so parse the raw body
    try:
        body = json.loads(request.get_data(as_text=True) or '{}')
        if not isinstance(body, dict):
            raise ValueError("Request body must be a JSON object")
        action = body.get('action')
        if action != 'syncAll':
            return jsonify({"success": False, "error": f"Unknown action: {action}"}), 200

        data = body.get('data')
        if not isinstance(data, dict):
            raise ValueError("syncAll requires a data object")
        for key in ('users', 'products', 'transactions', 'stores', 'rawMaterials'):
            if data.get(key) is not None:
                update_sheet(SHEETS[key], data[key])
        if data.get('config'):
            update_sheet('CONFIG', [data['config']])
        db.session.commit()
        logger.info("syncAll stored %s", ', '.join(k for k in SHEETS if data.get(k) is not None))
        return jsonify({"success": True, "timestamp": iso_timestamp(datetime.now(timezone.utc))}), 200
    except Exception as e:
        db.session.rollback()
        logger.error("syncAll failed: %s", e)
        return jsonify({"success": False, "error": str(e)}), 200


@sheets_bp.route('/')
def home():
    return "7 Divas Sheet Backend Running"


def create_sheet_app(config=None):
    app = Flask(__name__)
    default_db = 'sqlite:///' + os.path.join(basedir, 'sheets.db')
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('SHEETS_DATABASE_URL', default_db)
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    if config:
        app.config.update(config)

    CORS(app)
    db.init_app(app)
    app.register_blueprint(sheets_bp)

    with app.app_context():
        db.create_all()
    return app


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.environ.get('SHEETS_PORT', 5001))
    create_sheet_app().run(debug=True, host='0.0.0.0', port=port)
