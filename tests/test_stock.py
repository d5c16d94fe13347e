"""
STOCK TESTS
Direct stock adjustments for products and materials, and the low-stock listing.

Test scenarios:
- Setting stock replaces the quantity
- Negative or malformed quantities are refused and leave stock alone
- Products take whole units only, materials accept fractions
- Low-stock listing only shows the caller's own records under their minimum
"""

from decimal import Decimal

import pytest

from artisan import create_app, db, User, Material, Product


@pytest.fixture
def app():
    """
    Create test Flask application with in-memory database.
    """
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SECRET_KEY': 'test-secret',
    })

    with app.app_context():
        db.create_all()
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def owner_id(client):
    resp = client.post('/api/auth/register', json={'email': 'u@example.com', 'password': 'secret1', 'name': 'U'})
    return resp.get_json()['user']['id']


def test_material_stock_adjustment(client, owner_id):
    material = Material(user_id=owner_id, name='Clay', unit='kg', unit_price=Decimal('3.20'), quantity=Decimal('5'))
    db.session.add(material)
    db.session.commit()
    mid = material.id

    resp = client.put(f'/api/materials/{mid}/stock', json={'quantity': '12.5'})
    assert resp.status_code == 200
    assert resp.get_json()['material']['quantity'] == 12.5

    db.session.expire_all()
    assert db.session.get(Material, mid).quantity == Decimal('12.5')


def test_product_stock_adjustment(client, owner_id):
    product = Product(user_id=owner_id, name='Vase', price=Decimal('30'), quantity=2)
    db.session.add(product)
    db.session.commit()
    pid = product.id

    resp = client.put(f'/api/products/{pid}/stock', json={'quantity': 7})
    assert resp.status_code == 200
    assert resp.get_json()['product']['quantity'] == 7

    # Whole units only
    resp = client.put(f'/api/products/{pid}/stock', json={'quantity': 7.5})
    assert resp.status_code == 400
    db.session.expire_all()
    assert db.session.get(Product, pid).quantity == 7


@pytest.mark.parametrize('body', [{}, {'quantity': -1}, {'quantity': 'x'}])
def test_stock_adjustment_rejects_bad_input(client, owner_id, body):
    material = Material(user_id=owner_id, name='Clay', unit='kg', unit_price=Decimal('3.20'), quantity=Decimal('5'))
    db.session.add(material)
    db.session.commit()
    mid = material.id

    resp = client.put(f'/api/materials/{mid}/stock', json=body)
    assert resp.status_code == 400
    db.session.expire_all()
    assert db.session.get(Material, mid).quantity == Decimal('5')


def test_stock_adjustment_checks_ownership(client, owner_id):
    other = User(email='other@example.com', name='Other')
    other.set_password('secret1')
    db.session.add(other)
    db.session.flush()
    material = Material(user_id=other.id, name='Gold', unit='g', unit_price=Decimal('60'), quantity=Decimal('1'))
    db.session.add(material)
    db.session.commit()

    resp = client.put(f'/api/materials/{material.id}/stock', json={'quantity': 100})
    assert resp.status_code == 404
    assert client.get(f'/api/materials/{material.id}').status_code == 404


def test_low_stock_listing(client, owner_id):
    other = User(email='other@example.com', name='Other')
    other.set_password('secret1')
    db.session.add(other)
    db.session.flush()
    db.session.add_all([
        Material(user_id=owner_id, name='Glaze', unit='l', quantity=Decimal('0.5'), min_stock=Decimal('1')),
        Material(user_id=owner_id, name='Clay', unit='kg', quantity=Decimal('20'), min_stock=Decimal('5')),
        Material(user_id=other.id, name='Foreign', unit='kg', quantity=Decimal('0'), min_stock=Decimal('5')),
        Product(user_id=owner_id, name='Mug', quantity=1, min_stock=4),
        Product(user_id=owner_id, name='Plate', quantity=4, min_stock=4),
    ])
    db.session.commit()

    resp = client.get('/api/low-stock')
    assert resp.status_code == 200
    data = resp.get_json()
    assert data['has_low_stock'] is True
    assert [m['name'] for m in data['materials']] == ['Glaze']
    assert [p['name'] for p in data['products']] == ['Mug']


def test_low_stock_listing_when_all_stocked(client, owner_id):
    db.session.add(Material(user_id=owner_id, name='Clay', unit='kg', quantity=Decimal('20'), min_stock=Decimal('5')))
    db.session.commit()

    data = client.get('/api/low-stock').get_json()
    assert data == {'products': [], 'materials': [], 'has_low_stock': False}
