# Overview: Service-layer operations for customers; checkout lookup/upsert by phone.

from __future__ import annotations

from ..extensions import db
from ..models import Customer, User
from ..results import not_found, validation_failure


def resolve_customer(customer_id: int | None, name: str | None, phone: str | None):
    """
    Customer for a sale.

    Explicit id wins and must exist. Otherwise name and phone are required:
    the first customer with that phone is reused (its name refreshed) or a new
    one is created. Returns the Customer or a Failure.
    """
    if customer_id is not None:
        customer = db.session.get(Customer, customer_id)
        if customer is None:
            return not_found("customer_not_found", "Customer not found")
        return customer

    if not name or not phone:
        return validation_failure("customer_name_and_phone_required")

    customer = (
        db.session.query(Customer)
        .filter_by(phone=phone)
        .order_by(Customer.id.asc())
        .first()
    )
    if customer is None:
        customer = Customer(name=name, phone=phone)
        db.session.add(customer)
    elif customer.name != name:
        customer.name = name
    db.session.flush()
    return customer


def resolve_seller(seller_id: int):
    user = db.session.get(User, seller_id)
    if user is None or not user.is_active:
        return not_found("seller_not_found", "Seller not found")
    return user
