"""
Price quotes for clients.

A quote holds priced lines, optionally tied to catalogue products, plus labor
and a discount. Totals are worked out here on every create and update so the
stored subtotal and total always match the lines.
"""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from manufacturing import InventoryError, OperationFailed, to_decimal
from models import db, Client, Product, Quote, QuoteItem, MONEY_PLACES

logger = logging.getLogger(__name__)

QUOTE_STATUSES = ('DRAFT', 'SENT', 'APPROVED', 'REJECTED', 'COMPLETED')

# Tries at taking the next free number when two quotes are created at once
NUMBER_ATTEMPTS = 3


# ==================== ERRORS ====================

class QuoteNotFound(InventoryError):
    status_code = 404
    code = 'QUOTE_NOT_FOUND'

    def __init__(self, quote_id=None):
        super().__init__('Quote not found', {'quote_id': quote_id})


class ClientNotFound(InventoryError):
    code = 'CLIENT_NOT_FOUND'

    def __init__(self, client_id=None):
        super().__init__('Client not found', {'client_id': client_id})


class InvalidQuote(InventoryError):
    code = 'INVALID_QUOTE'


class InvalidStatus(InventoryError):
    code = 'INVALID_STATUS'

    def __init__(self, status=None):
        super().__init__('Invalid status. Must be one of: ' + ', '.join(QUOTE_STATUSES),
                         {'status': status})


# ==================== TOTALS ====================

def cents(value):
    return Decimal(value).quantize(MONEY_PLACES)


def calculate_totals(lines, labor_cost, discount, manual_total=None):
    """
    Return (subtotal, total) for quote lines carrying quantity and unit_price.

    subtotal is the sum of quantity x unit_price; total is manual_total when one
    is given, otherwise subtotal + labor_cost - discount. Both are in cents.
    """
    subtotal = sum((line['quantity'] * line['unit_price'] for line in lines), Decimal('0'))
    if manual_total is not None:
        total = manual_total
    else:
        total = subtotal + labor_cost - discount
    return cents(subtotal), cents(total)


# ==================== INPUT PARSING ====================

def _amount(data, field, default):
    if data.get(field) is None:
        return default
    number = to_decimal(data[field])
    if number is None or number < 0:
        raise InvalidQuote(f'{field} must be zero or a positive number', {'field': field})
    return number


def _valid_until(value):
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise InvalidQuote('valid_until must be a date (YYYY-MM-DD)', {'field': 'valid_until'})


def _owned_client(user_id, client_id):
    if client_id is None or client_id == '':
        raise InvalidQuote('Client is required', {'field': 'client_id'})
    try:
        client_id = int(client_id)
    except (TypeError, ValueError):
        raise ClientNotFound(client_id)
    client = db.session.execute(
        select(Client).where(Client.id == client_id, Client.user_id == user_id)
    ).scalar_one_or_none()
    if client is None:
        raise ClientNotFound(client_id)
    return client


def parse_items(user_id, items):
    """
    Validate submitted quote lines and return them with Decimal amounts and line totals.
    Product references must point at products of the same user.
    """
    if not isinstance(items, list) or not items:
        raise InvalidQuote('At least one item is required', {'field': 'items'})

    lines = []
    for item in items:
        description = str(item.get('description') or '').strip() if isinstance(item, dict) else ''
        if not description or item.get('quantity') is None or item.get('unit_price') is None:
            raise InvalidQuote('Each item must have description, quantity, and unit_price')

        quantity = to_decimal(item['quantity'])
        if quantity is None or quantity <= 0:
            raise InvalidQuote('Item quantity must be positive', {'quantity': str(item['quantity'])})
        unit_price = to_decimal(item['unit_price'])
        if unit_price is None or unit_price < 0:
            raise InvalidQuote('Item unit_price must be zero or a positive number',
                               {'unit_price': str(item['unit_price'])})

        lines.append({
            'description': description,
            'quantity': quantity,
            'unit_price': unit_price,
            'total': cents(quantity * unit_price),
            'product_id': item.get('product_id') or None,
        })

    referenced = [line for line in lines if line['product_id'] is not None]
    if referenced:
        for line in referenced:
            raw = line['product_id']
            if isinstance(raw, bool) or not isinstance(raw, (int, str)) or not str(raw).strip().isdigit():
                raise InvalidQuote(f'Product {raw} not found', {'product_id': raw})
            line['product_id'] = int(raw)
        wanted = {line['product_id'] for line in referenced}
        owned = set(db.session.execute(
            select(Product.id).where(Product.id.in_(wanted), Product.user_id == user_id)
        ).scalars())
        missing = sorted(wanted - owned)
        if missing:
            raise InvalidQuote(f'Product {missing[0]} not found', {'product_id': missing[0]})

    return lines


def _build_items(lines):
    return [
        QuoteItem(
            description=line['description'],
            quantity=line['quantity'],
            unit_price=line['unit_price'],
            total=line['total'],
            product_id=line['product_id'],
        )
        for line in lines
    ]


# ==================== QUOTE OPERATIONS ====================

def next_quote_number(user_id):
    last = db.session.execute(
        select(func.max(Quote.number)).where(Quote.user_id == user_id)
    ).scalar()
    return (last or 0) + 1


def list_quotes(user_id, status=None, page=1, per_page=10):
    """Newest first, optionally filtered by status; unknown statuses are ignored."""
    stmt = select(Quote).where(Quote.user_id == user_id)
    if status in QUOTE_STATUSES:
        stmt = stmt.where(Quote.status == status)
    stmt = stmt.order_by(Quote.created_at.desc(), Quote.id.desc())
    return db.paginate(stmt, page=page, per_page=per_page, error_out=False)


def create_quote(user_id, data):
    """Validate and store a new quote under the user's next quote number."""
    client = _owned_client(user_id, data.get('client_id'))
    lines = parse_items(user_id, data.get('items'))
    labor_cost = _amount(data, 'labor_cost', Decimal('0'))
    discount = _amount(data, 'discount', Decimal('0'))
    manual_total = _amount(data, 'manual_total', None)
    valid_until = _valid_until(data.get('valid_until'))
    subtotal, total = calculate_totals(lines, labor_cost, discount, manual_total)

    for attempt in range(1, NUMBER_ATTEMPTS + 1):
        quote = Quote(
            user_id=user_id,
            client_id=client.id,
            number=next_quote_number(user_id),
            title=data.get('title'),
            description=data.get('description'),
            valid_until=valid_until,
            notes=data.get('notes'),
            subtotal=subtotal,
            labor_cost=labor_cost,
            discount=discount,
            manual_total=manual_total,
            total=total,
        )
        quote.items = _build_items(lines)
        db.session.add(quote)
        try:
            db.session.commit()
        except IntegrityError:
            # Another quote took the same number
            db.session.rollback()
            logger.warning('Quote number clash for user %s (attempt %d of %d)',
                           user_id, attempt, NUMBER_ATTEMPTS)
            continue
        logger.info('Created quote #%s for user %s, total %s', quote.number, user_id, total)
        return quote

    raise OperationFailed('Could not assign a quote number, please try again')


def update_quote(quote, data):
    """
    Apply the fields present in ``data``. Items, when given, replace the existing
    lines. Totals are always recomputed; manual_total may be cleared with null.
    """
    client = _owned_client(quote.user_id, data['client_id']) if 'client_id' in data else None

    if 'items' in data:
        lines = parse_items(quote.user_id, data['items'])
    else:
        lines = [{'quantity': item.quantity, 'unit_price': item.unit_price} for item in quote.items]

    labor_cost = _amount(data, 'labor_cost', quote.labor_cost)
    discount = _amount(data, 'discount', quote.discount)
    if 'manual_total' in data:
        manual_total = _amount(data, 'manual_total', None)
    else:
        manual_total = quote.manual_total

    valid_until = _valid_until(data['valid_until']) if 'valid_until' in data else quote.valid_until

    # Nothing below can fail validation
    if client is not None:
        quote.client_id = client.id
    for field in ('title', 'description', 'notes'):
        if field in data:
            setattr(quote, field, data[field])
    quote.valid_until = valid_until
    if 'items' in data:
        quote.items = _build_items(lines)
    quote.labor_cost = labor_cost
    quote.discount = discount
    quote.manual_total = manual_total
    quote.subtotal, quote.total = calculate_totals(lines, labor_cost, discount, manual_total)
    db.session.commit()
    return quote


def set_status(quote, status):
    if status not in QUOTE_STATUSES:
        raise InvalidStatus(status)
    previous = quote.status
    quote.status = status
    db.session.commit()
    logger.info('Quote %s status %s -> %s', quote.id, previous, status)
    return quote


def delete_quote(quote):
    db.session.delete(quote)
    db.session.commit()
