# Overview: Flask CLI command groups for bootstrap, catalog seeding and sale operations.

# possale/cli.py
# Commands Legend:
# Prereqs:
# - Activate your virtualenv and install the package (pip install -e .).
# - Use: flask --app possale <group> <command> [options]
#
# System bootstrap/repair:
# - flask --app possale system init-db
#   Create all tables (idempotent).
# - flask --app possale system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Catalog seeding:
# - flask --app possale products add --sku "COF-001" --name "Coffee" --price 10.00 --quantity 5
#   Add a product with an opening stock level.
# - flask --app possale products list
#   List products with price, stock and active flag.
#
# Sales:
# - flask --app possale sales create --cashier-id 1 --item 1:3 --item 2:1:0.50 --discount 1.00
#   Create a sale; each --item is PRODUCT_ID:QUANTITY[:LINE_DISCOUNT].
# - flask --app possale sales void 12 --role Manager
#   Void a completed sale (Admin/Manager only) and restore stock.
# - flask --app possale sales show 12
# - flask --app possale sales list --status Completed --limit 20

import json

import click
from flask.cli import with_appcontext

from .errors import SaleError, ValidationError
from .extensions import db
from .models import Product
from .services.pricing_service import parse_money, quantize_money
from .services.sales_service import build_sale_coordinator, ensure_can_void
from .validation import SaleLineRequest, require_int


def _fail(exc: SaleError) -> None:
    click.echo(json.dumps(exc.to_dict(), indent=2), err=True)
    raise SystemExit(1)


def _parse_item(raw: str) -> SaleLineRequest:
    parts = raw.split(":")
    if len(parts) not in (2, 3):
        raise ValidationError(
            f"Invalid --item {raw!r}; expected PRODUCT_ID:QUANTITY[:DISCOUNT]",
            details={"item": raw},
        )
    product_id = require_int(parts[0], "productId")
    quantity = require_int(parts[1], "quantity", positive=True)
    discount = parse_money(parts[2] if len(parts) == 3 else None, "discount")
    return SaleLineRequest(product_id=product_id, quantity=quantity, discount=discount)


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.echo("FAIL Refusing to reset without --yes")
        raise SystemExit(1)
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


@click.group('products')
def products_group():
    """Minimal catalog seeding for operating the sale engine."""


@products_group.command('add')
@click.option('--sku', required=True)
@click.option('--name', required=True)
@click.option('--price', required=True, help='Unit price, e.g. 10.00')
@click.option('--quantity', default=0, type=int, show_default=True, help='Opening stock')
@click.option('--inactive', is_flag=True, help='Create the product as inactive')
@with_appcontext
def add_product(sku, name, price, quantity, inactive):
    """Add a product."""
    try:
        unit_price = quantize_money(parse_money(price, "price"))
        if unit_price <= 0:
            raise ValidationError("price must be > 0", details={"price": str(unit_price)})
        if quantity < 0:
            raise ValidationError("quantity must be >= 0", details={"quantity": quantity})
    except SaleError as exc:
        _fail(exc)

    if db.session.query(Product).filter_by(sku=sku).first():
        click.echo(f"FAIL Product with SKU {sku!r} already exists")
        raise SystemExit(1)

    product = Product(
        sku=sku,
        name=name,
        unit_price=unit_price,
        quantity_on_hand=quantity,
        is_active=not inactive,
    )
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product {product.sku} (ID: {product.id}, stock: {product.quantity_on_hand})")


@products_group.command('list')
@with_appcontext
def list_products():
    """List products."""
    products = db.session.query(Product).order_by(Product.id).all()
    if not products:
        click.echo("No products found")
        return
    for p in products:
        flag = "" if p.is_active else " [inactive]"
        click.echo(f"{p.id:>5}  {p.sku:<16} {p.name:<30} {p.unit_price:>10}  qoh={p.quantity_on_hand}{flag}")


@click.group('sales')
def sales_group():
    """Create, void and inspect sales."""


@sales_group.command('create')
@click.option('--cashier-id', required=True, type=int)
@click.option('--item', 'items', multiple=True, help='PRODUCT_ID:QUANTITY[:DISCOUNT]; repeatable')
@click.option('--payment-method', default='Cash', show_default=True)
@click.option('--payment-reference', default=None)
@click.option('--discount', default='0', show_default=True, help='Sale-level discount')
@click.option('--notes', default=None)
@click.option('--timeout', default=None, type=float, help='Seconds before the sale is aborted')
@with_appcontext
def create_sale(cashier_id, items, payment_method, payment_reference, discount, notes, timeout):
    """Create a sale and print it as JSON."""
    try:
        lines = [_parse_item(raw) for raw in items]
        sale = build_sale_coordinator().create_sale(
            cashier_id,
            lines,
            payment_method=payment_method,
            payment_reference=payment_reference,
            sale_discount=discount,
            notes=notes,
            timeout=timeout,
        )
    except SaleError as exc:
        _fail(exc)
    click.echo(json.dumps(sale.to_dict(), indent=2))


@sales_group.command('void')
@click.argument('sale_id', type=int)
@click.option('--role', required=True, help='Role of the principal requesting the void')
@click.option('--timeout', default=None, type=float)
@with_appcontext
def void_sale(sale_id, role, timeout):
    """Void a completed sale and restore stock."""
    try:
        ensure_can_void(role)
        build_sale_coordinator().void_sale(sale_id, timeout=timeout)
    except SaleError as exc:
        _fail(exc)
    click.echo(f"PASS Sale {sale_id} voided")


@sales_group.command('show')
@click.argument('sale_id', type=int)
@with_appcontext
def show_sale(sale_id):
    """Print one sale as JSON."""
    try:
        sale = build_sale_coordinator().get_sale(sale_id)
    except SaleError as exc:
        _fail(exc)
    click.echo(json.dumps(sale.to_dict(), indent=2))


@sales_group.command('list')
@click.option('--status', default=None, type=click.Choice(['Completed', 'Voided']))
@click.option('--limit', default=20, type=int, show_default=True)
@with_appcontext
def list_sales(status, limit):
    """List recent sales."""
    try:
        sales = build_sale_coordinator().list_sales(status=status, limit=limit)
    except SaleError as exc:
        _fail(exc)
    if not sales:
        click.echo("No sales found")
        return
    for s in sales:
        click.echo(
            f"{s.id:>5}  {s.sale_date:%Y-%m-%d %H:%M}  {s.status.value:<9} "
            f"items={len(s.items):<3} total={s.grand_total}  cashier={s.cashier_id}"
        )


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(products_group)
    app.cli.add_command(sales_group)
