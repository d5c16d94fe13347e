"""
Workshop production logic.

Covers the three pieces of the application that touch stock consistency:

- the technical sheet (bill of materials) of a product,
- the cost of building one unit from that sheet,
- manufacturing runs, which consume material stock and add product stock.

Callers pass entities that already belong to the requesting account; ownership
is resolved by the web layer before anything here runs.
"""

import logging
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import contains_eager

from models import db, Material, Product, ProductMaterial, as_decimal, amount, money

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

# Decimal places of Material.quantity
QUANTITY_SCALE = 3


# ==================== ERRORS ====================

class InventoryError(Exception):
    """Base class for errors reported back to the caller as structured messages."""

    status_code = 400
    code = 'INVENTORY_ERROR'

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self):
        data = {'error': self.message, 'code': self.code}
        data.update(self.details)
        return data


class InvalidQuantity(InventoryError):
    code = 'INVALID_QUANTITY'

    def __init__(self, message='Quantity must be a positive number', value=None, reason='not_positive'):
        super().__init__(message, {'value': None if value is None else str(value), 'reason': reason})


class NoMaterialsDefined(InventoryError):
    code = 'NO_MATERIALS_DEFINED'

    def __init__(self, product_name=None):
        super().__init__('Product has no materials defined in technical sheet',
                         {'product': product_name})


class InsufficientMaterials(InventoryError):
    """Raised with every shortfall of a run, not only the first one found."""

    code = 'INSUFFICIENT_MATERIALS'

    def __init__(self, shortfalls):
        self.shortfalls = shortfalls
        super().__init__('Insufficient materials')

    def to_dict(self):
        data = super().to_dict()
        data['insufficient_materials'] = [
            {
                'material_id': item['material_id'],
                'material_name': item['material_name'],
                'required': amount(item['required']),
                'available': amount(item['available']),
                'shortage': amount(item['shortage']),
                'unit': item['unit'],
            }
            for item in self.shortfalls
        ]
        return data


class ProductNotFound(InventoryError):
    status_code = 404
    code = 'PRODUCT_NOT_FOUND'

    def __init__(self, product_id=None):
        super().__init__('Product not found', {'product_id': product_id})


class MaterialNotFound(InventoryError):
    status_code = 404
    code = 'MATERIAL_NOT_FOUND'

    def __init__(self, material_id=None):
        super().__init__('Material not found', {'material_id': material_id})


class BomEntryNotFound(InventoryError):
    status_code = 404
    code = 'BOM_ENTRY_NOT_FOUND'

    def __init__(self, material_id=None):
        super().__init__('Material not found in this product', {'material_id': material_id})


class DuplicateBomEntry(InventoryError):
    status_code = 409
    code = 'DUPLICATE_BOM_ENTRY'

    def __init__(self, material_id=None):
        super().__init__('Material already added to this product', {'material_id': material_id})


class OperationFailed(InventoryError):
    status_code = 500
    code = 'OPERATION_FAILED'

    def __init__(self, message='Manufacturing could not be completed, no stock was changed'):
        super().__init__(message)


# ==================== INPUT PARSING ====================

def to_decimal(value):
    """Parse a submitted number into a finite Decimal, or None when it is not one."""
    # bool is an int subclass; True must not read as 1
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(value.strip()) if isinstance(value, str) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not number.is_finite():
        return None
    return number


def _checked(value):
    number = to_decimal(value)
    if number is None:
        raise InvalidQuantity('Quantity must be a number', value=value, reason='not_a_number')
    return number


def parse_build_quantity(value):
    """
    Validate the number of units requested for a manufacturing run.
    Product stock is counted in whole units, so the value must be a positive integer.
    """
    number = _checked(value)
    if number <= 0:
        raise InvalidQuantity(value=value)
    if number != number.to_integral_value():
        raise InvalidQuantity('Quantity must be a whole number of units', value=value, reason='not_whole')
    return int(number)


def parse_sheet_quantity(value):
    """Validate a per-unit material quantity; fractions are allowed."""
    number = _checked(value)
    if number <= 0:
        raise InvalidQuantity(value=value)
    return number


def parse_stock_level(value, whole_units=False):
    """Validate an absolute stock level set by hand. Zero is allowed, negatives are not."""
    number = _checked(value)
    if number < 0:
        raise InvalidQuantity('Quantity must be zero or a positive number', value=value, reason='negative')
    if whole_units:
        if number != number.to_integral_value():
            raise InvalidQuantity('Quantity must be a whole number of units', value=value, reason='not_whole')
        return int(number)
    return number


# ==================== TECHNICAL SHEET (BOM) ====================

def list_sheet(product):
    """Return the sheet lines of a product, each with its material loaded, ordered by material name."""
    stmt = (
        select(ProductMaterial)
        .join(ProductMaterial.material)
        .where(ProductMaterial.product_id == product.id)
        .options(contains_eager(ProductMaterial.material))
        .order_by(Material.name, Material.id)
    )
    return db.session.execute(stmt).scalars().all()


def _sheet_entry(product, material_id):
    return db.session.execute(
        select(ProductMaterial).where(
            ProductMaterial.product_id == product.id,
            ProductMaterial.material_id == material_id,
        )
    ).scalar_one_or_none()


def add_to_sheet(product, material, quantity):
    """
    Put a material on a product's sheet.
    A material already on the sheet is rejected; its quantity has to be updated instead.
    """
    quantity = parse_sheet_quantity(quantity)
    if _sheet_entry(product, material.id) is not None:
        raise DuplicateBomEntry(material.id)

    entry = ProductMaterial(product_id=product.id, material_id=material.id, quantity=quantity)
    db.session.add(entry)
    try:
        db.session.commit()
    except IntegrityError:
        # Another request added the same pair between our check and the insert
        db.session.rollback()
        raise DuplicateBomEntry(material.id)
    return entry


def update_sheet_entry(product, material_id, quantity):
    quantity = parse_sheet_quantity(quantity)
    entry = _sheet_entry(product, material_id)
    if entry is None:
        raise BomEntryNotFound(material_id)
    entry.quantity = quantity
    db.session.commit()
    return entry


def remove_from_sheet(product, material_id):
    entry = _sheet_entry(product, material_id)
    if entry is None:
        raise BomEntryNotFound(material_id)
    db.session.delete(entry)
    db.session.commit()


# ==================== COST CALCULATOR ====================

def calculate_cost(product, entries=None):
    """
    Production cost of one unit of ``product``.

    material_cost is the sum of quantity x unit price over the sheet, total_cost adds
    the product's labor cost. All amounts are exact Decimals; rounding is left to
    whoever presents them. A product without a sheet costs its labor only.
    """
    if entries is None:
        entries = list_sheet(product)

    material_cost = Decimal('0')
    breakdown = []
    for entry in entries:
        quantity = as_decimal(entry.quantity)
        unit_price = as_decimal(entry.material.unit_price)
        line_cost = quantity * unit_price
        material_cost += line_cost
        breakdown.append({
            'material_id': entry.material_id,
            'material_name': entry.material.name,
            'quantity': quantity,
            'unit': entry.material.unit,
            'unit_price': unit_price,
            'cost': line_cost,
        })

    labor_cost = as_decimal(product.labor_cost)
    return {
        'product_id': product.id,
        'product_name': product.name,
        'material_cost': material_cost,
        'labor_cost': labor_cost,
        'total_cost': material_cost + labor_cost,
        'material_breakdown': breakdown,
    }


def cost_to_dict(cost):
    """Presentation form of calculate_cost() output."""
    return {
        'product_id': cost['product_id'],
        'product_name': cost['product_name'],
        'material_cost': money(cost['material_cost']),
        'labor_cost': money(cost['labor_cost']),
        'total_cost': money(cost['total_cost']),
        'material_breakdown': [
            {
                'material_id': line['material_id'],
                'material_name': line['material_name'],
                'quantity': amount(line['quantity']),
                'unit': line['unit'],
                'unit_price': money(line['unit_price']),
                'cost': money(line['cost']),
            }
            for line in cost['material_breakdown']
        ],
    }


# ==================== MANUFACTURING ====================

def _read_requirements(product_id, quantity, lock=True):
    """
    Load the sheet with fresh material rows and work out what a run of ``quantity`` needs.
    With ``lock`` the material rows are selected FOR UPDATE on backends that support it,
    always in material id order.
    """
    stmt = (
        select(ProductMaterial)
        .join(ProductMaterial.material)
        .where(ProductMaterial.product_id == product_id)
        .options(contains_eager(ProductMaterial.material))
        .order_by(Material.id)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update(of=Material)

    requirements = []
    for entry in db.session.execute(stmt).scalars().all():
        material = entry.material
        requirements.append({
            'material_id': material.id,
            'material_name': material.name,
            'unit': material.unit,
            'required': as_decimal(entry.quantity) * quantity,
            'available': as_decimal(material.quantity),
            'min_stock': as_decimal(material.min_stock),
        })
    return requirements


def find_shortfalls(requirements):
    """Every requirement whose material stock cannot cover it."""
    shortfalls = []
    for item in requirements:
        if item['available'] < item['required']:
            shortfalls.append({
                'material_id': item['material_id'],
                'material_name': item['material_name'],
                'required': item['required'],
                'available': item['available'],
                'shortage': item['required'] - item['available'],
                'unit': item['unit'],
            })
    return shortfalls


def low_stock_warnings(requirements):
    """Materials that end below their threshold once the run's consumption is taken out."""
    warnings = []
    for item in requirements:
        remaining = item['available'] - item['required']
        if remaining < item['min_stock']:
            warnings.append({
                'material_id': item['material_id'],
                'material_name': item['material_name'],
                'current_stock': remaining,
                'min_stock': item['min_stock'],
                'unit': item['unit'],
            })
    return warnings


def warning_to_dict(warning):
    return {
        'material_id': warning['material_id'],
        'material_name': warning['material_name'],
        'current_stock': amount(warning['current_stock']),
        'min_stock': amount(warning['min_stock']),
        'unit': warning['unit'],
    }


def _at_scale(expr):
    return func.round(expr, QUANTITY_SCALE, type_=Material.__table__.c.quantity.type)


def _apply_run(product_id, quantity, requirements):
    """
    Issue the stock updates of one run inside the current transaction.

    Each decrement only matches while the row still holds enough stock. Returns False
    as soon as one of them matches nothing, leaving the caller to roll back.

    Guard and result are rounded to the column scale; backends without a native
    decimal type (SQLite) would otherwise compare and store binary float residue.
    """
    for item in requirements:
        stored = _at_scale(Material.quantity)
        result = db.session.execute(
            update(Material)
            .where(Material.id == item['material_id'], stored >= item['required'])
            .values(quantity=_at_scale(Material.quantity - item['required']))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(quantity=Product.quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ProductNotFound(product_id)
    return True


def manufacture(product, quantity, max_attempts=None):
    """
    Build ``quantity`` units of ``product``, consuming the materials on its sheet.

    Either every material is decremented and the product incremented in a single
    transaction, or nothing changes and an InventoryError says why. Sufficiency is
    checked again by the decrements themselves, so two runs racing for the same
    stock cannot both commit. Returns the refreshed product, the quantity built and
    the low-stock warnings the run caused.
    """
    quantity = parse_build_quantity(quantity)
    if max_attempts is None:
        max_attempts = current_app.config.get('MANUFACTURE_MAX_ATTEMPTS', DEFAULT_MAX_ATTEMPTS)

    product_id = product.id
    product_name = product.name

    committed = None
    for attempt in range(1, max_attempts + 1):
        try:
            requirements = _read_requirements(product_id, quantity)
            if not requirements:
                logger.info('Manufacture of product %s rejected: empty technical sheet', product_id)
                raise NoMaterialsDefined(product_name)

            shortfalls = find_shortfalls(requirements)
            if shortfalls:
                logger.info('Manufacture of %d x product %s rejected: %d material(s) short',
                            quantity, product_id, len(shortfalls))
                raise InsufficientMaterials(shortfalls)

            if _apply_run(product_id, quantity, requirements):
                db.session.commit()
                committed = requirements
                break

            db.session.rollback()
            logger.warning('Stock changed while manufacturing product %s, retrying (attempt %d of %d)',
                           product_id, attempt, max_attempts)
        except InventoryError:
            db.session.rollback()
            raise
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception('Manufacture of product %s failed in storage', product_id)
            raise OperationFailed() from exc

    if committed is None:
        raise OperationFailed('Stock kept changing during manufacturing, please try again')

    warnings = low_stock_warnings(committed)
    for warning in warnings:
        logger.warning('Material %s (%s) is below minimum stock: %s < %s %s',
                       warning['material_id'], warning['material_name'],
                       warning['current_stock'], warning['min_stock'], warning['unit'])

    db.session.refresh(product)
    logger.info('Manufactured %d unit(s) of product %s (%s)', quantity, product_id, product_name)
    return {
        'product': product,
        'manufactured': quantity,
        'warnings': warnings,
    }
