from functools import wraps

from flask import current_app, jsonify
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request

from records import User, UserRole
from state_store import DashboardError

# Maintenance account that works even when the user collection is empty or broken
MAINTENANCE_EMAIL = 'ti@7divas.com'
MAINTENANCE_PASSWORD = 'mestre7'
MAINTENANCE_USER_ID = 'ti'

LOGIN_FAILED_MESSAGE = 'Access denied. Check your credentials.'


class LoginError(DashboardError):
    status_code = 401


def maintenance_user():
    return User(id=MAINTENANCE_USER_ID, name='Master TI Admin', email=MAINTENANCE_EMAIL,
                role=UserRole.TI, status='ATIVO')


def authenticate(store, email, password):
    email = (email or '').strip()
    password = (password or '').strip()
    if email == MAINTENANCE_EMAIL and password == MAINTENANCE_PASSWORD:
        return maintenance_user()

    # plaintext comparison, as stored
    user = store.find_user_by_email(email)
    if user is None or user.password is None or user.password != password:
        raise LoginError(LOGIN_FAILED_MESSAGE)
    if not user.is_active:
        raise LoginError('This account is inactive. Contact an administrator.')
    return user


def resolve_user(store, user_id):
    if user_id == MAINTENANCE_USER_ID:
        return maintenance_user()
    return store.find_user(user_id)


def current_user():
    verify_jwt_in_request()
    store = current_app.extensions['state_store']
    return resolve_user(store, get_jwt_identity())


def role_required(allowed_roles):
    allowed = [UserRole(r) for r in allowed_roles]

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = current_user()
            if not user or not user.is_active:
                return jsonify({"message": "User not found or inactive"}), 401
            if user.role not in allowed:
                return jsonify({"message": f"Access denied. Required roles: {[r.value for r in allowed]}"}), 403
            return f(*args, user=user, **kwargs)
        return decorated_function
    return decorator
