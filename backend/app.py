import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, create_access_token, jwt_required

from auth import authenticate, current_user, role_required
from records import UserRole
from state_store import DashboardError, NotFoundError, ProductNotFoundError, StateStore, ValidationError
from storage import LocalStorage
from sync import PULL_INTERVAL_SECONDS, PUSH_DEBOUNCE_SECONDS, REQUEST_TIMEOUT, RemoteClient, SyncEngine

load_dotenv()

logger = logging.getLogger(__name__)

basedir = os.path.abspath(os.path.dirname(__file__))

ALL_ROLES = [r.value for r in UserRole]
STOCK_ROLES = ['ADMIN', 'ESTOQUE_EXPEDICAO', 'GERENCIA', 'TI']
INTAKE_ROLES = ['ADMIN', 'ENTRADA_INSUMOS', 'FINANCEIRO', 'GERENCIA', 'TI']
FINANCE_ROLES = ['ADMIN', 'FINANCEIRO', 'GERENCIA', 'TI']
ADMIN_ROLES = ['ADMIN', 'TI']

api = Blueprint("api", __name__)


def _env_flag(name, default):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def get_store():
    return current_app.extensions['state_store']


def get_sync():
    return current_app.extensions['sync_engine']


def request_data():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def safe_quantity(val):
    if isinstance(val, bool):
        return None
    if isinstance(val, int):
        return val
    try:
        num = float(val)
    except (TypeError, ValueError):
        return None
    return int(num) if num.is_integer() else None


def create_app(config=None, store=None, engine=None):
    app = Flask(__name__)

    default_db = 'sqlite:///' + os.path.join(basedir, '7divas_local.db')
    app.config['DATA_DB_URL'] = os.environ.get('DATA_DB_URL', default_db)
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', '7divas-dashboard-key')
    app.config['JWT_SECRET_KEY'] = os.environ.get('JWT_SECRET_KEY', 'jwt-secret-7divas-dashboard-change-me')
    app.config['JWT_ACCESS_TOKEN_EXPIRES'] = timedelta(hours=12)
    app.config['SYNC_AUTOSTART'] = _env_flag('SYNC_AUTOSTART', 'true')
    app.config['PUSH_DEBOUNCE_SECONDS'] = float(os.environ.get('PUSH_DEBOUNCE_SECONDS', PUSH_DEBOUNCE_SECONDS))
    app.config['PULL_INTERVAL_SECONDS'] = float(os.environ.get('PULL_INTERVAL_SECONDS', PULL_INTERVAL_SECONDS))
    app.config['SYNC_TIMEOUT'] = float(os.environ.get('SYNC_TIMEOUT', REQUEST_TIMEOUT))
    if config:
        app.config.update(config)

    # Configure CORS to allow requests from the dashboard frontend
    allowed_origins = os.environ.get('ALLOWED_ORIGINS', '*').split(',')
    CORS(app,
         resources={r"/api/*": {"origins": allowed_origins}},
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"])
    JWTManager(app)

    if store is None:
        store = StateStore(LocalStorage(app.config['DATA_DB_URL']))
    if engine is None:
        engine = SyncEngine(store,
                            client=RemoteClient(timeout=app.config['SYNC_TIMEOUT']),
                            debounce=app.config['PUSH_DEBOUNCE_SECONDS'],
                            pull_interval=app.config['PULL_INTERVAL_SECONDS'])
    app.extensions['state_store'] = store
    app.extensions['sync_engine'] = engine

    app.register_blueprint(api, url_prefix='/api')

    @app.errorhandler(DashboardError)
    def handle_dashboard_error(e):
        return jsonify({"message": e.message}), e.status_code

    @app.route("/")
    def home():
        return "7 Divas Dashboard Backend Running"

    if app.config['SYNC_AUTOSTART']:
        engine.start()
    return app


@api.route('/health', methods=['GET'])
def health_check():
    return jsonify({"status": "healthy", "service": "7 Divas Dashboard"}), 200


# Auth Routes
@api.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    user = authenticate(get_store(), data.get('email'), data.get('password'))
    access_token = create_access_token(identity=user.id, additional_claims={"role": user.role.value})
    return jsonify({"token": access_token, "user": user.to_dict(include_password=False)}), 200


@api.route('/verify', methods=['GET'])
@jwt_required()
def verify():
    user = current_user()
    if not user or not user.is_active:
        return jsonify({"message": "User not found"}), 404
    return jsonify({"user": user.to_dict(include_password=False)}), 200


@api.route('/state', methods=['GET'])
@role_required(ALL_ROLES)
def get_state(user):
    data = get_store().snapshot()
    for row in data['users']:
        row.pop('password', None)
    data['sync'] = get_sync().status_dict()
    return jsonify(data), 200


# Products
@api.route('/products', methods=['GET'])
@role_required(ALL_ROLES)
def get_products(user):
    return jsonify([p.to_dict() for p in get_store().products]), 200


@api.route('/products', methods=['POST'])
@role_required(STOCK_ROLES)
def save_product(user):
    data = request_data()
    is_new = not data.get('id') or get_store().find_product(data['id']) is None
    product = get_store().save_product(data, user_id=user.id)
    return jsonify(product.to_dict()), 201 if is_new else 200


@api.route('/products/<product_id>', methods=['PUT'])
@role_required(STOCK_ROLES)
def update_product(product_id, user):
    if get_store().find_product(product_id) is None:
        raise ProductNotFoundError(product_id)
    product = get_store().save_product({**request_data(), 'id': product_id}, user_id=user.id)
    return jsonify(product.to_dict()), 200


@api.route('/products/<product_id>', methods=['DELETE'])
@role_required(STOCK_ROLES)
def delete_product(product_id, user):
    get_store().delete_product(product_id)
    return jsonify({"message": "Product deleted successfully"}), 200


@api.route('/products/low-stock', methods=['GET'])
@role_required(ALL_ROLES)
def low_stock(user):
    return jsonify([p.to_dict() for p in get_store().low_stock_products()]), 200


# Inventory movements
@api.route('/inventory/movements', methods=['POST'])
@role_required(STOCK_ROLES)
def create_movement(user):
    data = request_data()
    store = get_store()
    tx = store.record_movement(
        data.get('productId'),
        safe_quantity(data.get('quantity')),
        data.get('type'),
        store_id=data.get('storeId') or None,
        user_id=user.id,
    )
    product = store.find_product(tx.product_id)
    return jsonify({
        "message": "Movement recorded",
        "transaction": tx.to_dict(),
        "currentStock": product.current_stock if product else None,
    }), 201


@api.route('/transactions', methods=['GET'])
@role_required(ALL_ROLES)
def get_transactions(user):
    txns = list(get_store().transactions)
    for key, attr in (('productId', 'product_id'), ('type', 'type'), ('storeId', 'store_id')):
        val = request.args.get(key)
        if val:
            txns = [t for t in txns if getattr(t, attr) == val]
    txns.sort(key=lambda t: t.timestamp, reverse=True)
    limit = request.args.get('limit', 100, type=int)
    return jsonify({"transactions": [t.to_dict() for t in txns[:limit]], "total": len(txns)}), 200


# Raw materials
@api.route('/raw-materials', methods=['GET'])
@role_required(ALL_ROLES)
def get_raw_materials(user):
    return jsonify([r.to_dict() for r in get_store().raw_materials]), 200


@api.route('/raw-materials', methods=['POST'])
@role_required(INTAKE_ROLES)
def add_raw_material(user):
    entry = get_store().add_raw_material(request_data(), user_id=user.id)
    return jsonify(entry.to_dict()), 201


@api.route('/raw-materials/<entry_id>', methods=['PUT'])
@role_required(FINANCE_ROLES)
def update_raw_material(entry_id, user):
    entry = get_store().update_raw_material({**request_data(), 'id': entry_id})
    return jsonify(entry.to_dict()), 200


@api.route('/raw-materials/<entry_id>', methods=['DELETE'])
@role_required(FINANCE_ROLES)
def delete_raw_material(entry_id, user):
    get_store().delete_raw_material(entry_id)
    return jsonify({"message": "Raw material entry deleted"}), 200


# Users (never hard-deleted, status flag instead)
@api.route('/users', methods=['GET'])
@role_required(ADMIN_ROLES)
def get_users(user):
    return jsonify([u.to_dict(include_password=False) for u in get_store().users]), 200


@api.route('/users', methods=['POST'])
@role_required(ADMIN_ROLES)
def create_user(user):
    data = request_data()
    data.pop('id', None)
    if not data.get('password'):
        raise ValidationError("A password is required for new users")
    created = get_store().save_user(data)
    return jsonify(created.to_dict(include_password=False)), 201


@api.route('/users/<user_id>', methods=['PUT'])
@role_required(ADMIN_ROLES)
def update_user(user_id, user):
    if get_store().find_user(user_id) is None:
        raise NotFoundError(f"User {user_id} not found")
    updated = get_store().save_user({**request_data(), 'id': user_id})
    return jsonify(updated.to_dict(include_password=False)), 200


# Stores
@api.route('/stores', methods=['GET'])
@role_required(ALL_ROLES)
def get_stores(user):
    return jsonify([s.to_dict() for s in get_store().stores]), 200


@api.route('/stores', methods=['POST'])
@role_required(ADMIN_ROLES)
def create_store(user):
    data = request_data()
    data.pop('id', None)
    return jsonify(get_store().save_store(data).to_dict()), 201


@api.route('/stores/<store_id>', methods=['PUT'])
@role_required(ADMIN_ROLES)
def update_store(store_id, user):
    if get_store().find_store(store_id) is None:
        raise NotFoundError(f"Store {store_id} not found")
    return jsonify(get_store().save_store({**request_data(), 'id': store_id}).to_dict()), 200


# Config (the login screen needs branding before anyone is authenticated)
@api.route('/config', methods=['GET'])
def get_config():
    data = get_store().config.to_dict()
    data.pop('gasWebAppUrl', None)
    return jsonify(data), 200


@api.route('/config', methods=['PUT'])
@role_required(ADMIN_ROLES)
def update_config(user):
    config = get_store().update_config(request_data())
    return jsonify(config.to_dict()), 200


# Sync maintenance
@api.route('/sync/status', methods=['GET'])
@role_required(ALL_ROLES)
def sync_status(user):
    return jsonify(get_sync().status_dict()), 200


@api.route('/sync/force', methods=['POST'])
@role_required(ADMIN_ROLES)
def force_sync(user):
    engine = get_sync()
    if not get_store().endpoint_url:
        return jsonify({"message": "No remote endpoint configured"}), 400
    engine.force_sync()
    logger.info("Forced sync requested by %s", user.id)
    return jsonify({"message": "Sync started"}), 202


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # Use PORT from environment for local testing if needed
    port = int(os.environ.get('PORT', 5000))
    create_app().run(debug=True, host='0.0.0.0', port=port, use_reloader=False)
