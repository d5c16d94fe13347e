"""
MANUFACTURING TESTS
Manufacturing runs consume material stock and add product stock, all or nothing.

This test module covers:
- Successful runs and the exact stock movements they cause
- Rejection listing every short material, with no stock touched
- Empty technical sheets and invalid build quantities
- Low-stock warnings attached to successful runs
- Rollback when the commit itself fails in storage
- The HTTP endpoint and its response bodies

Scenario used throughout ("workshop" fixture):
- Product Chair, sheet: 2 Wood + 1 Glue per unit
- Wood: stock 10, minimum 3
- Glue: stock 3, minimum 1
"""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

import manufacturing
from artisan import create_app, db, User, Material, Product, ProductMaterial
from manufacturing import (
    InsufficientMaterials,
    InvalidQuantity,
    NoMaterialsDefined,
    OperationFailed,
    manufacture,
    parse_build_quantity,
)


@pytest.fixture
def app():
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


def seed_workshop(user_id):
    wood = Material(user_id=user_id, name='Wood', unit='un', unit_price=Decimal('1.00'),
                    quantity=Decimal('10'), min_stock=Decimal('3'))
    glue = Material(user_id=user_id, name='Glue', unit='ml', unit_price=Decimal('0.50'),
                    quantity=Decimal('3'), min_stock=Decimal('1'))
    chair = Product(user_id=user_id, name='Chair', price=Decimal('45.00'), labor_cost=Decimal('15.00'),
                    quantity=0, min_stock=0)
    db.session.add_all([wood, glue, chair])
    db.session.flush()
    db.session.add_all([
        ProductMaterial(product_id=chair.id, material_id=wood.id, quantity=Decimal('2')),
        ProductMaterial(product_id=chair.id, material_id=glue.id, quantity=Decimal('1')),
    ])
    db.session.commit()
    return {'wood': wood.id, 'glue': glue.id, 'chair': chair.id}


@pytest.fixture
def workshop(app):
    user = User(email='maker@example.com', name='Maker')
    user.set_password('secret1')
    db.session.add(user)
    db.session.commit()
    ids = seed_workshop(user.id)
    ids['user_id'] = user.id
    return ids


def stock(ids):
    """Current quantities, read fresh from the database."""
    db.session.expire_all()
    return (
        db.session.get(Material, ids['wood']).quantity,
        db.session.get(Material, ids['glue']).quantity,
        db.session.get(Product, ids['chair']).quantity,
    )


# ==================== CORE OPERATION ====================

def test_single_unit_commits_without_warnings(workshop):
    chair = db.session.get(Product, workshop['chair'])

    result = manufacture(chair, 1)

    assert result['manufactured'] == 1
    assert result['warnings'] == []
    assert result['product'].quantity == 1
    assert stock(workshop) == (Decimal('8'), Decimal('2'), 1)


def test_shortfall_rejects_whole_run(workshop):
    chair = db.session.get(Product, workshop['chair'])

    with pytest.raises(InsufficientMaterials) as excinfo:
        manufacture(chair, 4)

    # Only Glue is short: 4 required, 3 available
    assert excinfo.value.shortfalls == [{
        'material_id': workshop['glue'],
        'material_name': 'Glue',
        'required': Decimal('4'),
        'available': Decimal('3'),
        'shortage': Decimal('1'),
        'unit': 'ml',
    }]
    # Wood had enough but must stay untouched
    assert stock(workshop) == (Decimal('10'), Decimal('3'), 0)


def test_every_shortfall_is_reported(workshop):
    chair = db.session.get(Product, workshop['chair'])

    with pytest.raises(InsufficientMaterials) as excinfo:
        manufacture(chair, 6)

    names = sorted(item['material_name'] for item in excinfo.value.shortfalls)
    assert names == ['Glue', 'Wood']
    shortages = {item['material_name']: item['shortage'] for item in excinfo.value.shortfalls}
    assert shortages == {'Wood': Decimal('2'), 'Glue': Decimal('3')}
    assert stock(workshop) == (Decimal('10'), Decimal('3'), 0)


def test_low_stock_warning_does_not_block_run(workshop):
    glue = db.session.get(Material, workshop['glue'])
    glue.quantity = Decimal('10')
    db.session.commit()
    chair = db.session.get(Product, workshop['chair'])

    result = manufacture(chair, 4)

    # Wood: 10 - 8 = 2, below its minimum of 3; Glue: 10 - 4 = 6, fine
    assert result['manufactured'] == 4
    assert result['warnings'] == [{
        'material_id': workshop['wood'],
        'material_name': 'Wood',
        'current_stock': Decimal('2'),
        'min_stock': Decimal('3'),
        'unit': 'un',
    }]
    assert stock(workshop) == (Decimal('2'), Decimal('6'), 4)


def test_exact_stock_can_be_used_up(workshop):
    chair = db.session.get(Product, workshop['chair'])

    result = manufacture(chair, 3)

    # Glue ends at exactly 0, under its minimum of 1
    assert stock(workshop) == (Decimal('4'), Decimal('0'), 3)
    assert [w['material_name'] for w in result['warnings']] == ['Glue']


def test_runs_accumulate(workshop):
    chair = db.session.get(Product, workshop['chair'])
    manufacture(chair, 1)
    manufacture(chair, 2)

    assert stock(workshop) == (Decimal('4'), Decimal('0'), 3)
    with pytest.raises(InsufficientMaterials):
        manufacture(chair, 1)
    assert stock(workshop) == (Decimal('4'), Decimal('0'), 3)


@pytest.mark.parametrize('on_hand, per_unit, runs', [
    ('0.3', '0.1', 3),
    ('0.35', '0.07', 5),
    ('1.2', '0.3', 4),
])
def test_fractional_stock_is_used_down_to_zero(workshop, on_hand, per_unit, runs):
    thread = Material(user_id=workshop['user_id'], name='Thread', unit='m', unit_price=Decimal('0.40'),
                      quantity=Decimal(on_hand), min_stock=Decimal('0'))
    bracelet = Product(user_id=workshop['user_id'], name='Bracelet', quantity=0)
    db.session.add_all([thread, bracelet])
    db.session.flush()
    db.session.add(ProductMaterial(product_id=bracelet.id, material_id=thread.id, quantity=Decimal(per_unit)))
    db.session.commit()
    thread_id, bracelet_id = thread.id, bracelet.id

    # One unit at a time, so every run subtracts from an already decremented value
    for done in range(1, runs + 1):
        result = manufacture(db.session.get(Product, bracelet_id), 1)
        assert result['manufactured'] == 1
        db.session.expire_all()
        assert db.session.get(Material, thread_id).quantity == Decimal(on_hand) - done * Decimal(per_unit)

    assert db.session.get(Material, thread_id).quantity == Decimal('0')
    assert db.session.get(Product, bracelet_id).quantity == runs

    # Empty now: a plain shortfall, not a storage failure
    with pytest.raises(InsufficientMaterials):
        manufacture(db.session.get(Product, bracelet_id), 1)


def test_fractional_run_of_several_units(workshop):
    resin = Material(user_id=workshop['user_id'], name='Resin', unit='l', unit_price=Decimal('12.00'),
                     quantity=Decimal('0.9'), min_stock=Decimal('0.2'))
    coaster = Product(user_id=workshop['user_id'], name='Coaster', quantity=0)
    db.session.add_all([resin, coaster])
    db.session.flush()
    db.session.add(ProductMaterial(product_id=coaster.id, material_id=resin.id, quantity=Decimal('0.15')))
    db.session.commit()

    result = manufacture(coaster, 6)

    assert result['manufactured'] == 6
    assert [w['current_stock'] for w in result['warnings']] == [Decimal('0')]
    db.session.expire_all()
    assert db.session.get(Material, resin.id).quantity == Decimal('0')


def test_empty_sheet_is_rejected(workshop):
    stool = Product(user_id=workshop['user_id'], name='Stool', labor_cost=Decimal('5'), quantity=2)
    db.session.add(stool)
    db.session.commit()

    with pytest.raises(NoMaterialsDefined):
        manufacture(stool, 1)

    db.session.expire_all()
    assert db.session.get(Product, stool.id).quantity == 2
    assert stock(workshop) == (Decimal('10'), Decimal('3'), 0)


@pytest.mark.parametrize('quantity', [0, -2, 1.5, '2.5', 'two', '', None, True, float('nan')])
def test_invalid_quantity_is_rejected(workshop, quantity):
    chair = db.session.get(Product, workshop['chair'])

    with pytest.raises(InvalidQuantity):
        manufacture(chair, quantity)
    assert stock(workshop) == (Decimal('10'), Decimal('3'), 0)


@pytest.mark.parametrize('value, expected', [(1, 1), ('3', 3), (' 4 ', 4), (2.0, 2), (Decimal('5'), 5)])
def test_build_quantity_parsing(value, expected):
    assert parse_build_quantity(value) == expected


def test_commit_failure_rolls_back(workshop, monkeypatch):
    chair = db.session.get(Product, workshop['chair'])

    def failing_commit():
        raise OperationalError('COMMIT', {}, Exception('disk I/O error'))

    monkeypatch.setattr(db.session, 'commit', failing_commit)

    with pytest.raises(OperationFailed):
        manufacture(chair, 1)

    monkeypatch.undo()
    assert stock(workshop) == (Decimal('10'), Decimal('3'), 0)


def test_gives_up_when_stock_keeps_changing(workshop, monkeypatch):
    chair = db.session.get(Product, workshop['chair'])
    calls = []

    def stock_always_moved(product_id, quantity, requirements):
        calls.append(product_id)
        return False

    monkeypatch.setattr(manufacturing, '_apply_run', stock_always_moved)

    with pytest.raises(OperationFailed):
        manufacture(chair, 1, max_attempts=2)

    assert len(calls) == 2
    assert stock(workshop) == (Decimal('10'), Decimal('3'), 0)


# ==================== HTTP ENDPOINT ====================

@pytest.fixture
def signed_in(client):
    resp = client.post('/api/auth/register', json={'email': 'web@example.com', 'password': 'secret1', 'name': 'Web'})
    return seed_workshop(resp.get_json()['user']['id'])


def test_manufacture_endpoint_success(client, signed_in):
    resp = client.post(f"/api/products/{signed_in['chair']}/manufacture", json={'quantity': 1})

    assert resp.status_code == 200
    data = resp.get_json()
    assert data['manufactured'] == 1
    assert data['product']['quantity'] == 1
    assert data['message'] == 'Successfully manufactured 1 unit(s) of Chair'
    assert 'warnings' not in data


def test_manufacture_endpoint_reports_warnings(client, signed_in):
    client.put(f"/api/materials/{signed_in['glue']}/stock", json={'quantity': 10})

    resp = client.post(f"/api/products/{signed_in['chair']}/manufacture", json={'quantity': 4})

    assert resp.status_code == 200
    assert resp.get_json()['warnings'] == [{
        'material_id': signed_in['wood'],
        'material_name': 'Wood',
        'current_stock': 2.0,
        'min_stock': 3.0,
        'unit': 'un',
    }]


def test_manufacture_endpoint_reports_shortfalls(client, signed_in):
    resp = client.post(f"/api/products/{signed_in['chair']}/manufacture", json={'quantity': 4})

    assert resp.status_code == 400
    data = resp.get_json()
    assert data['code'] == 'INSUFFICIENT_MATERIALS'
    assert data['error'] == 'Insufficient materials'
    assert data['insufficient_materials'] == [{
        'material_id': signed_in['glue'],
        'material_name': 'Glue',
        'required': 4.0,
        'available': 3.0,
        'shortage': 1.0,
        'unit': 'ml',
    }]
    assert stock(signed_in) == (Decimal('10'), Decimal('3'), 0)


@pytest.mark.parametrize('body', [{}, {'quantity': 0}, {'quantity': -1}, {'quantity': 'lots'}])
def test_manufacture_endpoint_invalid_quantity(client, signed_in, body):
    resp = client.post(f"/api/products/{signed_in['chair']}/manufacture", json=body)
    assert resp.status_code == 400
    assert resp.get_json()['code'] == 'INVALID_QUANTITY'


@pytest.mark.parametrize('body, reason', [
    ({'quantity': 1.5}, 'not_whole'),
    ({'quantity': '2.5'}, 'not_whole'),
    ({'quantity': 0}, 'not_positive'),
    ({'quantity': -3}, 'not_positive'),
    ({'quantity': 'lots'}, 'not_a_number'),
    ({}, 'not_a_number'),
])
def test_manufacture_endpoint_invalid_quantity_reason(client, signed_in, body, reason):
    resp = client.post(f"/api/products/{signed_in['chair']}/manufacture", json=body)
    assert resp.status_code == 400
    assert resp.get_json()['reason'] == reason
    assert stock(signed_in) == (Decimal('10'), Decimal('3'), 0)


def test_manufacture_endpoint_empty_sheet(client, signed_in):
    product = Product(user_id=db.session.get(Product, signed_in['chair']).user_id, name='Stool')
    db.session.add(product)
    db.session.commit()

    resp = client.post(f'/api/products/{product.id}/manufacture', json={'quantity': 1})
    assert resp.status_code == 400
    assert resp.get_json()['code'] == 'NO_MATERIALS_DEFINED'


def test_manufacture_endpoint_unknown_product(client, signed_in):
    resp = client.post('/api/products/9999/manufacture', json={'quantity': 1})
    assert resp.status_code == 404
    assert resp.get_json()['code'] == 'PRODUCT_NOT_FOUND'
