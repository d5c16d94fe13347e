# Artisan workshop manager - Flask JSON API
# Application factory, authentication, ownership checks and the HTTP routes
# over materials, products, technical sheets, costing, manufacturing and quotes.

import logging
import os
import re
from functools import wraps

from flask import Flask, request, session, g, jsonify
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException, BadRequest

import manufacturing
import quotes
from manufacturing import (
    InventoryError,
    MaterialNotFound,
    OperationFailed,
    ProductNotFound,
    add_to_sheet,
    calculate_cost,
    cost_to_dict,
    list_sheet,
    manufacture,
    parse_stock_level,
    remove_from_sheet,
    update_sheet_entry,
    warning_to_dict,
)
# Models are importable from here too, e.g. from artisan import db, Product
from models import db, User, Material, Product, ProductMaterial, Client, Quote, QuoteItem
from quotes import (
    QuoteNotFound,
    create_quote,
    delete_quote,
    list_quotes,
    set_status,
    update_quote,
)

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
MIN_PASSWORD_LENGTH = 6


# ==================== APPLICATION FACTORY ====================

def create_app(test_config=None):
    """
    Application factory that creates and configures the Flask application.

    Args:
        test_config (dict, optional): Configuration overrides, applied after the defaults.

    Returns:
        Flask: Configured application with tables created.
    """
    app = Flask(__name__)

    # ==================== APPLICATION CONFIGURATION ====================
    # SQLite database next to this file unless ARTISAN_DATABASE_URL points elsewhere
    project_root = os.path.abspath(os.path.dirname(__file__))
    db_path = os.path.join(project_root, 'artisan.db')
    app.config.from_mapping(
        SECRET_KEY=os.environ.get('ARTISAN_SECRET', 'dev-secret'),  # Signs the session cookie
        SQLALCHEMY_DATABASE_URI=os.environ.get('ARTISAN_DATABASE_URL', f"sqlite:///{db_path}"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        MANUFACTURE_MAX_ATTEMPTS=3,  # Retries when stock changes mid-run
        QUOTES_PER_PAGE=10,
        LOG_LEVEL=os.environ.get('ARTISAN_LOG_LEVEL', 'INFO'),
    )

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config['LOG_LEVEL'])
    for module in (manufacturing, quotes):
        logging.getLogger(module.__name__).setLevel(app.config['LOG_LEVEL'])

    db.init_app(app)

    with app.app_context():
        db.create_all()

    # ==================== ERROR HANDLERS ====================

    @app.errorhandler(InventoryError)
    def handle_inventory_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({'error': exc.description, 'code': exc.name.upper().replace(' ', '_')}), exc.code

    @app.errorhandler(SQLAlchemyError)
    def handle_storage_error(exc):
        db.session.rollback()
        app.logger.exception('Storage error on %s %s', request.method, request.path)
        failure = OperationFailed('Storage error, no changes were saved')
        return jsonify(failure.to_dict()), failure.status_code

    # ==================== AUTHENTICATION & OWNERSHIP ====================

    @app.before_request
    def load_current_user():
        """Resolve the signed-in user from the session cookie into g.current_user."""
        user_id = session.get('user_id')
        g.current_user = db.session.get(User, user_id) if user_id is not None else None

    def login_required(fn):
        """Reject anonymous callers with a 401 JSON body."""

        @wraps(fn)
        def wrapped(*args, **kwargs):
            if g.get('current_user') is None:
                return jsonify({'error': 'Unauthorized', 'code': 'UNAUTHORIZED'}), 401
            return fn(*args, **kwargs)

        return wrapped

    def owned_product(product_id):
        product = db.session.execute(
            select(Product).where(Product.id == product_id, Product.user_id == g.current_user.id)
        ).scalar_one_or_none()
        if product is None:
            raise ProductNotFound(product_id)
        return product

    def owned_material(material_id):
        material = db.session.execute(
            select(Material).where(Material.id == material_id, Material.user_id == g.current_user.id)
        ).scalar_one_or_none()
        if material is None:
            raise MaterialNotFound(material_id)
        return material

    def owned_quote(quote_id):
        quote = db.session.execute(
            select(Quote).where(Quote.id == quote_id, Quote.user_id == g.current_user.id)
        ).scalar_one_or_none()
        if quote is None:
            raise QuoteNotFound(quote_id)
        return quote

    def json_body():
        return request.get_json(silent=True) or {}

    # ==================== MAIN ROUTES ====================

    @app.route('/api/health')
    def health():
        return jsonify({'status': 'ok'})

    # ==================== AUTHENTICATION ROUTES ====================

    @app.route('/api/auth/register', methods=['POST'])
    def register():
        """
        Create an account and sign it in.
        Requires email, password (6+ characters) and name; business name and phone are optional.
        """
        data = json_body()
        email = (data.get('email') or '').strip().lower()
        password = data.get('password') or ''
        name = (data.get('name') or '').strip()

        if not email or not password or not name:
            raise BadRequest('Email, password, and name are required')
        if not EMAIL_RE.match(email):
            raise BadRequest('Invalid email format')
        if len(password) < MIN_PASSWORD_LENGTH:
            raise BadRequest(f'Password must be at least {MIN_PASSWORD_LENGTH} characters')
        if db.session.execute(select(User).where(User.email == email)).scalar_one_or_none():
            raise BadRequest('Email already exists')

        user = User(
            email=email,
            name=name,
            business_name=data.get('business_name'),
            phone=data.get('phone'),
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()

        session.clear()
        session['user_id'] = user.id
        app.logger.info('Registered user %s', user.id)
        return jsonify({'user': user.to_dict()}), 201

    @app.route('/api/auth/login', methods=['POST'])
    def login():
        data = json_body()
        email = (data.get('email') or '').strip().lower()
        password = data.get('password') or ''
        if not email or not password:
            raise BadRequest('Email and password are required')

        user = db.session.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if user is None or not user.check_password(password):
            app.logger.info('Failed login for %s', email)
            return jsonify({'error': 'Invalid credentials', 'code': 'INVALID_CREDENTIALS'}), 401

        session.clear()  # Drop whatever the previous session held
        session['user_id'] = user.id
        return jsonify({'user': user.to_dict()})

    @app.route('/api/auth/logout', methods=['POST'])
    def logout():
        session.clear()
        return jsonify({'message': 'Logged out'})

    @app.route('/api/auth/me')
    @login_required
    def me():
        return jsonify({'user': g.current_user.to_dict()})

    # ==================== PRODUCT & MATERIAL LOOKUP ====================

    @app.route('/api/products/<int:product_id>')
    @login_required
    def get_product(product_id):
        """Single product together with its technical sheet."""
        product = owned_product(product_id)
        data = product.to_dict()
        data['materials'] = [entry.to_dict() for entry in list_sheet(product)]
        return jsonify({'product': data})

    @app.route('/api/materials/<int:material_id>')
    @login_required
    def get_material(material_id):
        return jsonify({'material': owned_material(material_id).to_dict()})

    # ==================== STOCK ADJUSTMENT ROUTES ====================

    @app.route('/api/products/<int:product_id>/stock', methods=['PUT'])
    @login_required
    def adjust_product_stock(product_id):
        """Set a product's stock to an absolute number of units."""
        product = owned_product(product_id)
        data = json_body()
        if 'quantity' not in data:
            raise BadRequest('Quantity is required')
        product.quantity = parse_stock_level(data['quantity'], whole_units=True)
        db.session.commit()
        app.logger.info('Product %s stock set to %s', product.id, product.quantity)
        return jsonify({'product': product.to_dict()})

    @app.route('/api/materials/<int:material_id>/stock', methods=['PUT'])
    @login_required
    def adjust_material_stock(material_id):
        """Set a material's stock to an absolute quantity."""
        material = owned_material(material_id)
        data = json_body()
        if 'quantity' not in data:
            raise BadRequest('Quantity is required')
        material.quantity = parse_stock_level(data['quantity'])
        db.session.commit()
        app.logger.info('Material %s stock set to %s', material.id, material.quantity)
        return jsonify({'material': material.to_dict()})

    @app.route('/api/low-stock')
    @login_required
    def low_stock():
        """Products and materials of the caller sitting below their minimum stock."""
        owner = g.current_user.id
        products = db.session.execute(
            select(Product).where(Product.user_id == owner).order_by(Product.name)
        ).scalars().all()
        materials = db.session.execute(
            select(Material).where(Material.user_id == owner).order_by(Material.name)
        ).scalars().all()

        low_products = [p.to_dict() for p in products if p.is_low_stock]
        low_materials = [m.to_dict() for m in materials if m.is_low_stock]
        return jsonify({
            'products': low_products,
            'materials': low_materials,
            'has_low_stock': bool(low_products or low_materials),
        })

    # ==================== TECHNICAL SHEET ROUTES ====================

    @app.route('/api/products/<int:product_id>/materials')
    @login_required
    def product_materials(product_id):
        product = owned_product(product_id)
        return jsonify({'materials': [entry.to_dict() for entry in list_sheet(product)]})

    @app.route('/api/products/<int:product_id>/materials', methods=['POST'])
    @login_required
    def add_product_material(product_id):
        """Add a material to the product's sheet; duplicates are rejected with 409."""
        product = owned_product(product_id)
        data = json_body()
        if data.get('material_id') is None or data.get('quantity') is None:
            raise BadRequest('material_id and quantity are required')
        try:
            material_id = int(data['material_id'])
        except (TypeError, ValueError):
            raise MaterialNotFound(data['material_id'])

        entry = add_to_sheet(product, owned_material(material_id), data['quantity'])
        return jsonify({'product_material': entry.to_dict()}), 201

    @app.route('/api/products/<int:product_id>/materials/<int:material_id>', methods=['PUT'])
    @login_required
    def update_product_material(product_id, material_id):
        product = owned_product(product_id)
        data = json_body()
        if data.get('quantity') is None:
            raise BadRequest('Quantity is required')
        entry = update_sheet_entry(product, material_id, data['quantity'])
        return jsonify({'product_material': entry.to_dict()})

    @app.route('/api/products/<int:product_id>/materials/<int:material_id>', methods=['DELETE'])
    @login_required
    def remove_product_material(product_id, material_id):
        product = owned_product(product_id)
        remove_from_sheet(product, material_id)
        return jsonify({'message': 'Material removed from product successfully'})

    # ==================== COSTING & MANUFACTURING ROUTES ====================

    @app.route('/api/products/<int:product_id>/cost')
    @login_required
    def product_cost(product_id):
        """Material, labor and total cost of one unit, with a line per material."""
        product = owned_product(product_id)
        return jsonify(cost_to_dict(calculate_cost(product)))

    @app.route('/api/products/<int:product_id>/manufacture', methods=['POST'])
    @login_required
    def manufacture_product(product_id):
        """
        Build units of a product from stock.
        Responds 400 with every shortfall when materials do not cover the run;
        low-stock warnings ride along with a successful result.
        """
        product = owned_product(product_id)
        result = manufacture(product, json_body().get('quantity'))

        built = result['manufactured']
        body = {
            'message': f"Successfully manufactured {built} unit(s) of {result['product'].name}",
            'product': result['product'].to_dict(),
            'manufactured': built,
        }
        if result['warnings']:
            body['warnings'] = [warning_to_dict(w) for w in result['warnings']]
        return jsonify(body)

    # ==================== QUOTE ROUTES ====================

    @app.route('/api/quotes')
    @login_required
    def get_quotes():
        """
        Caller's quotes, newest first.
        Query args: page, limit and an optional status filter.
        """
        page = request.args.get('page', 1, type=int)
        limit = request.args.get('limit', app.config['QUOTES_PER_PAGE'], type=int)
        result = list_quotes(g.current_user.id, request.args.get('status'), page, limit)
        return jsonify({
            'quotes': [quote.to_dict(include_items=False) for quote in result.items],
            'pagination': {
                'page': result.page,
                'limit': result.per_page,
                'total': result.total,
                'total_pages': result.pages,
            },
        })

    @app.route('/api/quotes/<int:quote_id>')
    @login_required
    def get_quote(quote_id):
        return jsonify({'quote': owned_quote(quote_id).to_dict()})

    @app.route('/api/quotes', methods=['POST'])
    @login_required
    def add_quote():
        """Create a quote; client_id and at least one item are required."""
        quote = create_quote(g.current_user.id, json_body())
        return jsonify({'quote': quote.to_dict()}), 201

    @app.route('/api/quotes/<int:quote_id>', methods=['PUT'])
    @login_required
    def edit_quote(quote_id):
        quote = update_quote(owned_quote(quote_id), json_body())
        return jsonify({'quote': quote.to_dict()})

    @app.route('/api/quotes/<int:quote_id>/status', methods=['PUT'])
    @login_required
    def change_quote_status(quote_id):
        quote = set_status(owned_quote(quote_id), json_body().get('status'))
        return jsonify({'quote': quote.to_dict()})

    @app.route('/api/quotes/<int:quote_id>', methods=['DELETE'])
    @login_required
    def remove_quote(quote_id):
        delete_quote(owned_quote(quote_id))
        return jsonify({'message': 'Quote deleted successfully'})

    return app


# ==================== APPLICATION ENTRY POINT ====================

if __name__ == '__main__':
    logging.basicConfig(level=os.environ.get('ARTISAN_LOG_LEVEL', 'INFO'),
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    create_app().run(debug=True, host='127.0.0.1', port=5000)
