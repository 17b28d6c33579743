import pytest

from app import create_app
from auth import LOGIN_FAILED_MESSAGE


@pytest.fixture
def app(store, engine):
    return create_app({
        'TESTING': True,
        'SYNC_AUTOSTART': False,
        'JWT_SECRET_KEY': 'test-secret-key-for-the-dashboard-suite',
    }, store=store, engine=engine)


@pytest.fixture
def http(app):
    return app.test_client()


def login(http, email, password):
    res = http.post('/api/login', json={"email": email, "password": password})
    assert res.status_code == 200, res.get_json()
    return {"Authorization": f"Bearer {res.get_json()['token']}"}


@pytest.fixture
def admin(http):
    return login(http, 'admin@7divas.com', 'admin123')


@pytest.fixture
def stock_clerk(http):
    return login(http, 'estoque@7divas.com', 'estoque123')


def test_health(http):
    res = http.get('/api/health')
    assert res.status_code == 200
    assert res.get_json()["status"] == "healthy"


class TestLogin:
    def test_wrong_password(self, http):
        res = http.post('/api/login', json={"email": "admin@7divas.com", "password": "nope"})
        assert res.status_code == 401
        assert res.get_json() == {"message": LOGIN_FAILED_MESSAGE}

    def test_unknown_email_and_empty_body(self, http):
        assert http.post('/api/login', json={"email": "x@7divas.com", "password": "x"}).status_code == 401
        assert http.post('/api/login', data='garbage').status_code == 401

    def test_email_ignores_case_and_spaces(self, http):
        res = http.post('/api/login', json={"email": "  Admin@7Divas.com ", "password": "admin123"})
        assert res.status_code == 200
        user = res.get_json()["user"]
        assert user["id"] == "u1"
        assert "password" not in user

    def test_maintenance_account(self, http, store):
        res = http.post('/api/login', json={"email": "ti@7divas.com", "password": "mestre7"})
        assert res.status_code == 200
        user = res.get_json()["user"]
        assert (user["id"], user["role"]) == ("ti", "TI")
        headers = {"Authorization": f"Bearer {res.get_json()['token']}"}
        assert http.get('/api/users', headers=headers).status_code == 200
        assert http.get('/api/verify', headers=headers).get_json()["user"]["email"] == "ti@7divas.com"

    def test_inactive_user_is_refused(self, http, store):
        store.set_user_status('u4', 'INATIVO')
        res = http.post('/api/login', json={"email": "financeiro@7divas.com", "password": "financeiro123"})
        assert res.status_code == 401
        assert "inactive" in res.get_json()["message"]

    def test_deactivation_revokes_existing_session(self, http, store):
        headers = login(http, 'financeiro@7divas.com', 'financeiro123')
        store.set_user_status('u4', 'INATIVO')
        assert http.get('/api/products', headers=headers).status_code == 401

    def test_missing_token(self, http):
        assert http.get('/api/products').status_code == 401


class TestInventory:
    def test_sale(self, http, stock_clerk, store):
        res = http.post('/api/inventory/movements', headers=stock_clerk,
                        json={"productId": "p2", "quantity": 3, "type": "SALE", "storeId": "s1"})
        assert res.status_code == 201
        body = res.get_json()
        assert body["currentStock"] == 17
        assert body["transaction"]["userId"] == "u2"
        assert body["transaction"]["totalValue"] == pytest.approx(359.7)
        assert store.find_product('p2').current_stock == 17

    def test_oversized_sale(self, http, stock_clerk, store):
        res = http.post('/api/inventory/movements', headers=stock_clerk,
                        json={"productId": "p3", "quantity": 5, "type": "SALE"})
        assert res.status_code == 400
        assert res.get_json()["message"].startswith("Insufficient stock! Only 4 units")
        assert store.find_product('p3').current_stock == 4

    def test_unknown_product(self, http, stock_clerk):
        res = http.post('/api/inventory/movements', headers=stock_clerk,
                        json={"productId": "p404", "quantity": 1, "type": "ENTRY"})
        assert res.status_code == 404

    @pytest.mark.parametrize('quantity', ['abc', 1.5, 0, None])
    def test_bad_quantity(self, http, stock_clerk, quantity):
        res = http.post('/api/inventory/movements', headers=stock_clerk,
                        json={"productId": "p2", "quantity": quantity, "type": "ENTRY"})
        assert res.status_code == 400

    def test_numeric_text_quantity_is_accepted(self, http, stock_clerk):
        res = http.post('/api/inventory/movements', headers=stock_clerk,
                        json={"productId": "p2", "quantity": "2", "type": "ENTRY"})
        assert res.status_code == 201
        assert res.get_json()["currentStock"] == 22

    def test_role_without_stock_access(self, http, store):
        headers = login(http, 'financeiro@7divas.com', 'financeiro123')
        res = http.post('/api/inventory/movements', headers=headers,
                        json={"productId": "p2", "quantity": 1, "type": "SALE"})
        assert res.status_code == 403
        assert store.find_product('p2').current_stock == 20

    def test_transactions_filtered_newest_first(self, http, admin):
        res = http.get('/api/transactions?productId=p1', headers=admin)
        body = res.get_json()
        assert body["total"] == 2
        assert [t["id"] for t in body["transactions"]] == ["tx8", "tx1"]
        limited = http.get('/api/transactions?limit=3', headers=admin).get_json()
        assert len(limited["transactions"]) == 3
        assert limited["total"] == 9

    def test_low_stock(self, http, admin):
        res = http.get('/api/products/low-stock', headers=admin)
        assert [p["id"] for p in res.get_json()] == ["p3"]


class TestProducts:
    def test_create_and_update(self, http, stock_clerk, store):
        res = http.post('/api/products', headers=stock_clerk,
                        json={"sku": "7D-KIM-006", "name": "Kimono", "costPrice": 80, "salePrice": 199.9,
                              "minStock": 2, "currentStock": 3})
        assert res.status_code == 201
        product_id = res.get_json()["id"]

        res = http.put(f'/api/products/{product_id}', headers=stock_clerk, json={"salePrice": "189,90"})
        assert res.status_code == 200
        assert res.get_json()["salePrice"] == 189.9
        assert res.get_json()["currentStock"] == 3
        assert store.ledger_stock(product_id) == 3

    def test_update_unknown_product(self, http, stock_clerk):
        assert http.put('/api/products/p404', headers=stock_clerk, json={"name": "x"}).status_code == 404

    def test_invalid_product(self, http, stock_clerk):
        res = http.post('/api/products', headers=stock_clerk, json={"name": "No SKU", "currentStock": -1})
        assert res.status_code == 400

    def test_delete(self, http, stock_clerk, store):
        assert http.delete('/api/products/p4', headers=stock_clerk).status_code == 200
        assert store.find_product('p4') is None


class TestRawMaterials:
    def test_intake_role_records_entry(self, http, store):
        headers = login(http, 'insumos@7divas.com', 'insumos123')
        res = http.post('/api/raw-materials', headers=headers,
                        json={"item": "Linha de seda", "quantity": 12, "value": 36.0, "supplier": "Fios & Cia"})
        assert res.status_code == 201
        entry = res.get_json()
        assert entry["userId"] == "u3"
        assert store.transactions[-1].raw_material_id == entry["id"]

    def test_intake_role_can_not_edit(self, http):
        headers = login(http, 'insumos@7divas.com', 'insumos123')
        assert http.delete('/api/raw-materials/rm1', headers=headers).status_code == 403


class TestAdministration:
    def test_users_never_expose_passwords(self, http, admin):
        users = http.get('/api/users', headers=admin).get_json()
        assert len(users) == 5
        assert all("password" not in u for u in users)

    def test_state_strips_passwords_and_reports_sync(self, http, stock_clerk):
        body = http.get('/api/state', headers=stock_clerk).get_json()
        assert all("password" not in u for u in body["users"])
        assert body["sync"]["state"] == "idle"
        assert len(body["stores"]) == 3

    def test_create_user_requires_password(self, http, admin):
        res = http.post('/api/users', headers=admin,
                        json={"name": "Nova", "email": "nova@7divas.com", "role": "GERENCIA"})
        assert res.status_code == 400
        res = http.post('/api/users', headers=admin,
                        json={"name": "Nova", "email": "nova@7divas.com", "role": "GERENCIA", "password": "n1"})
        assert res.status_code == 201
        assert login(http, 'nova@7divas.com', 'n1')

    def test_users_are_admin_only(self, http, stock_clerk):
        assert http.get('/api/users', headers=stock_clerk).status_code == 403

    def test_public_config_hides_endpoint(self, http, store):
        store.set_endpoint('https://script.example/exec')
        body = http.get('/api/config').get_json()
        assert body["companyName"] == "Ateliê 7 Divas"
        assert "gasWebAppUrl" not in body

    def test_config_store_list_can_not_be_emptied(self, http, admin, store):
        res = http.put('/api/config', headers=admin, json={"stores": []})
        assert res.status_code == 400
        assert len(store.stores) == 3

    def test_new_store_appears_in_config(self, http, admin, store):
        res = http.post('/api/stores', headers=admin, json={"name": "Loja Norte"})
        assert res.status_code == 201
        assert res.get_json()["status"] == "ATIVA"
        assert [s.name for s in store.config.stores][-1] == "Loja Norte"


class TestSyncRoutes:
    def test_force_sync_needs_endpoint(self, http, admin):
        assert http.post('/api/sync/force', headers=admin).status_code == 400

    def test_force_sync(self, http, admin, store, client, scheduler):
        store.set_endpoint('https://script.example/exec')
        res = http.post('/api/sync/force', headers=admin)
        assert res.status_code == 202
        scheduler.advance(0)
        assert client.fetches == ['https://script.example/exec']
        assert len(client.pushes) == 1

    def test_status(self, http, stock_clerk):
        body = http.get('/api/sync/status', headers=stock_clerk).get_json()
        assert body["running"] is False
        assert body["endpoint"] is None
