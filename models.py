# Database models for the Artisan workshop manager
# Users own materials and products; a product's technical sheet (bill of materials)
# links it to the materials consumed when one unit is built.

from decimal import Decimal

from flask_sqlalchemy import SQLAlchemy  # ORM for database operations
from werkzeug.security import generate_password_hash, check_password_hash  # Password security

# Initialize SQLAlchemy database instance
# This will be configured and bound to the Flask app by create_app()
db = SQLAlchemy()

MONEY_PLACES = Decimal('0.01')
QUANTITY_PLACES = Decimal('0.001')


def as_decimal(value):
    """Coerce a stored or submitted number to Decimal without going through binary float text."""
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value):
    """Round a currency amount for presentation."""
    return float(as_decimal(value).quantize(MONEY_PLACES))


def amount(value):
    """Round a stock quantity for presentation."""
    return float(as_decimal(value).quantize(QUANTITY_PLACES))


# ==================== DATABASE MODELS ====================

class User(db.Model):
    """
    Account owning a workshop's data.
    Every material and product belongs to exactly one user.
    """
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)  # Login identifier
    name = db.Column(db.String(120), nullable=False)
    business_name = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    password_hash = db.Column(db.String(256), nullable=False)  # Hashed password, never the raw value
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    def set_password(self, password):
        """
        Hash and store the user's password.
        Uses Werkzeug's generate_password_hash.
        """
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'business_name': self.business_name,
            'phone': self.phone,
        }


class Material(db.Model):
    """
    Raw material held in stock.
    Quantities may be fractional (kg, m, ...); the unit is a free-form label.
    """
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    unit = db.Column(db.String(30), nullable=False)  # Unit of measurement (kg, m, un, ...)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)  # Price per unit
    quantity = db.Column(db.Numeric(12, 3), nullable=False, default=0)  # Stock on hand
    min_stock = db.Column(db.Numeric(12, 3), nullable=False, default=0)  # Low-stock threshold
    supplier = db.Column(db.String(120), nullable=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    # Sheet lines referencing this material go away with it
    product_links = db.relationship(
        'ProductMaterial', back_populates='material', cascade='all, delete-orphan'
    )

    @property
    def is_low_stock(self):
        return as_decimal(self.quantity) < as_decimal(self.min_stock)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'unit': self.unit,
            'unit_price': money(self.unit_price),
            'quantity': amount(self.quantity),
            'min_stock': amount(self.min_stock),
            'supplier': self.supplier,
        }


class Product(db.Model):
    """
    Finished good built in the workshop.
    Stock is counted in whole units; labor_cost is the labor spent per unit.
    """
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)  # Sale price
    labor_cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)  # Labor cost per unit
    quantity = db.Column(db.Integer, nullable=False, default=0)  # Units in stock
    min_stock = db.Column(db.Integer, nullable=False, default=0)  # Low-stock threshold
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    # Technical sheet: materials consumed per unit built
    materials = db.relationship(
        'ProductMaterial', back_populates='product', cascade='all, delete-orphan'
    )

    @property
    def is_low_stock(self):
        return (self.quantity or 0) < (self.min_stock or 0)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'price': money(self.price),
            'labor_cost': money(self.labor_cost),
            'quantity': self.quantity,
            'min_stock': self.min_stock,
        }


class ProductMaterial(db.Model):
    """
    One line of a product's technical sheet: how much of a material goes into a single unit.
    A material appears at most once per product.
    """
    __table_args__ = (
        db.UniqueConstraint('product_id', 'material_id', name='uq_product_material'),
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id', ondelete='CASCADE'), nullable=False, index=True)
    material_id = db.Column(db.Integer, db.ForeignKey('material.id', ondelete='CASCADE'), nullable=False, index=True)
    quantity = db.Column(db.Numeric(12, 3), nullable=False)  # Per unit of product

    product = db.relationship('Product', back_populates='materials')
    material = db.relationship('Material', back_populates='product_links', lazy='joined')

    def to_dict(self):
        return {
            'id': self.id,
            'product_id': self.product_id,
            'material_id': self.material_id,
            'quantity': amount(self.quantity),
            'material': self.material.to_dict() if self.material else None,
        }


class Client(db.Model):
    """
    Customer a quote is addressed to.
    Only the fields a quote shows are kept here.
    """
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
        }


class Quote(db.Model):
    """
    Price quote sent to a client.
    number is sequential per user; total is manual_total when one is set,
    otherwise subtotal + labor_cost - discount.
    """
    __table_args__ = (
        db.UniqueConstraint('user_id', 'number', name='uq_quote_number'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey('client.id'), nullable=False, index=True)
    number = db.Column(db.Integer, nullable=False)  # 1, 2, 3... per user
    title = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='DRAFT')
    valid_until = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)  # Sum of item totals
    labor_cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    manual_total = db.Column(db.Numeric(12, 2), nullable=True)  # Overrides the computed total
    total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    client = db.relationship('Client')
    items = db.relationship(
        'QuoteItem', back_populates='quote', cascade='all, delete-orphan', order_by='QuoteItem.id'
    )

    def to_dict(self, include_items=True):
        data = {
            'id': self.id,
            'number': self.number,
            'title': self.title,
            'description': self.description,
            'status': self.status,
            'valid_until': self.valid_until.isoformat() if self.valid_until else None,
            'notes': self.notes,
            'subtotal': money(self.subtotal),
            'labor_cost': money(self.labor_cost),
            'discount': money(self.discount),
            'manual_total': None if self.manual_total is None else money(self.manual_total),
            'total': money(self.total),
            'client': self.client.to_dict() if self.client else None,
        }
        if include_items:
            data['items'] = [item.to_dict() for item in self.items]
        else:
            data['item_count'] = len(self.items)
        return data


class QuoteItem(db.Model):
    """One priced line of a quote, optionally pointing at a catalogue product."""
    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey('quote.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id', ondelete='SET NULL'), nullable=True)
    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Numeric(12, 3), nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    total = db.Column(db.Numeric(12, 2), nullable=False)  # quantity x unit_price

    quote = db.relationship('Quote', back_populates='items')
    product = db.relationship('Product')

    def to_dict(self):
        return {
            'id': self.id,
            'description': self.description,
            'quantity': amount(self.quantity),
            'unit_price': money(self.unit_price),
            'total': money(self.total),
            'product_id': self.product_id,
            'product': {'id': self.product.id, 'name': self.product.name} if self.product else None,
        }
