import pytest

from records import AppConfig, Product, RecordError, Store, Transaction, User, UserRole, decode_collection


def test_product_coerces_numeric_text():
    product = Product.from_dict({
        "id": "p9", "sku": 1020, "name": "Saia", "costPrice": "12.5", "salePrice": "39,90",
        "minStock": "3", "currentStock": 7.0,
    })
    assert product.sku == "1020"
    assert product.cost_price == 12.5
    assert product.sale_price == 39.9
    assert product.min_stock == 3
    assert product.current_stock == 7
    assert product.unit == "un"


def test_product_rejects_negative_or_fractional_stock():
    with pytest.raises(RecordError):
        Product.from_dict({"id": "p9", "sku": "x", "name": "x", "currentStock": -1})
    with pytest.raises(RecordError):
        Product.from_dict({"id": "p9", "sku": "x", "name": "x", "currentStock": "2.5"})


def test_user_password_from_numeric_cell_is_text():
    user = User.from_dict({"id": "u9", "name": "Ana", "email": "ana@7divas.com",
                           "password": 1234, "role": "FINANCEIRO", "status": "ATIVO"})
    assert user.password == "1234"
    assert user.role is UserRole.FINANCEIRO


def test_user_with_unknown_role_is_rejected():
    with pytest.raises(RecordError):
        User.from_dict({"id": "u9", "name": "Ana", "email": "ana@7divas.com", "role": "CEO"})


def test_empty_optional_cells_are_dropped():
    tx = Transaction.from_dict({"id": "tx1", "type": "SALE", "quantity": "2", "unitPrice": "10",
                                "totalValue": "", "timestamp": "2026-01-01T00:00:00.000Z",
                                "userId": "u1", "productId": "p1", "storeId": "", "rawMaterialId": ""})
    assert tx.store_id is None
    assert tx.total_value == 20.0
    assert "storeId" not in tx.to_dict()


def test_config_decodes_stores_kept_as_json_text():
    config = AppConfig.from_dict({
        "companyName": "Ateliê 7 Divas", "logoText": "7 Divas",
        "primaryColor": "#000", "accentColor": "#D4AF37",
        "stores": '[{"id": "s1", "name": "Loja Centro", "status": "ATIVA"}]',
    })
    assert [s.id for s in config.stores] == ["s1"]
    assert config.gas_web_app_url is None


def test_decode_collection_skips_invalid_rows():
    rows = [
        {"id": "s1", "name": "Centro", "status": "ATIVA"},
        {"name": "no id"},
        {"id": "s2", "name": "Bad status", "status": "FECHADA"},
        "not even a dict",
    ]
    stores = decode_collection(Store, rows)
    assert [s.id for s in stores] == ["s1"]


def test_strict_decoding_names_the_bad_row():
    rows = [{"id": "p1", "sku": "a", "name": "ok"}, {"id": "p9", "sku": "b", "name": "bad", "costPrice": "abc"}]
    with pytest.raises(RecordError) as exc:
        decode_collection(Product, rows, source='sheet', strict=True)
    assert "row 2" in str(exc.value)
    assert "'p9'" in str(exc.value)
