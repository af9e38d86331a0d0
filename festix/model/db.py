from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Numeric,
    JSON,
    ForeignKey,
    Index,
)


Base = declarative_base()

Money = Numeric(12, 2, asdecimal=True)


# ----------------------------
# Catalog (read-only here)
# ----------------------------
class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, default="")
    name_ro = Column(String, nullable=False, default="")
    name_ru = Column(String, nullable=False, default="")
    price = Column(Money, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class TicketOption(Base):
    __tablename__ = "ticket_options"
    id = Column(String, primary_key=True)
    ticket_id = Column(String, ForeignKey("tickets.id"), nullable=False)
    name_ro = Column(String, nullable=False, default="")
    name_ru = Column(String, nullable=False, default="")
    price_modifier = Column(Money, nullable=False, default=0)


# ----------------------------
# Retail orders
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=False, unique=True)

    customer_email = Column(String, nullable=False, index=True)
    customer_name = Column(String, nullable=False, default="")
    customer_phone = Column(String, nullable=False, default="")
    language = Column(String, nullable=False, default="ro")
    client_ip = Column(String, nullable=True)

    total_amount = Column(Money, nullable=False)
    discount_amount = Column(Money, nullable=False, default=0)
    # invitations keep their admin note here
    promo_code = Column(String, nullable=True)

    maib_transaction_id = Column(String, nullable=True, unique=True)
    # pending | ok | failed | reversed
    payment_status = Column(String, nullable=False, default="pending")
    # pending | paid | failed | refunded | expired | cancelled
    status = Column(String, nullable=False, default="pending")
    failure_reason = Column(String, nullable=True)
    is_invitation = Column(Boolean, nullable=False, default=False)

    reminder_count = Column(Integer, nullable=False, default=0)
    reminder_sent_at = Column(Float, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)
    paid_at = Column(Float, nullable=True)

    refund_reason = Column(String, nullable=True)
    refunded_at = Column(Float, nullable=True)
    refunded_by = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_orders_status_created_at", "status", "created_at"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    ticket_id = Column(String, nullable=False)
    ticket_option_id = Column(String, nullable=True)
    # always 1: one row per physical ticket
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Money, nullable=False)
    ticket_code = Column(String, nullable=False, unique=True)
    qr_data = Column(String, nullable=False)
    pdf_url = Column(String, nullable=True)
    # valid | refunded
    status = Column(String, nullable=False, default="valid")
    is_invitation = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class PromoCode(Base):
    __tablename__ = "promo_codes"
    id = Column(String, primary_key=True)
    # stored upper-cased
    code = Column(String, nullable=False, unique=True)
    discount_percent = Column(Numeric(5, 2), nullable=True)
    discount_amount = Column(Money, nullable=True)
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    valid_from = Column(Float, nullable=True)
    valid_until = Column(Float, nullable=True)
    min_order_amount = Column(Money, nullable=True)
    allowed_ticket_ids = Column(JSON, nullable=True)
    one_per_email = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False, default=0.0)


# ----------------------------
# B2B orders
# ----------------------------
class B2BOrder(Base):
    __tablename__ = "b2b_orders"
    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=False, unique=True)

    company_name = Column(String, nullable=False)
    company_tax_id = Column(String, nullable=True)
    company_address = Column(String, nullable=True)
    contact_name = Column(String, nullable=False)
    contact_email = Column(String, nullable=False)
    contact_phone = Column(String, nullable=False, default="")
    language = Column(String, nullable=False, default="ro")
    client_ip = Column(String, nullable=True)
    notes = Column(String, nullable=True)

    # online | invoice
    payment_method = Column(String, nullable=False)
    # pending | invoice_sent | paid | tickets_generated | tickets_sent |
    # completed | payment_failed | cancelled
    status = Column(String, nullable=False, default="pending")
    payment_status = Column(String, nullable=False, default="pending")

    total_amount = Column(Money, nullable=False)
    discount_percent = Column(Integer, nullable=False, default=0)
    discount_amount = Column(Money, nullable=False, default=0)
    final_amount = Column(Money, nullable=False)

    invoice_number = Column(String, nullable=True, unique=True)
    invoice_url = Column(String, nullable=True)
    invoice_sent_at = Column(Float, nullable=True)

    maib_transaction_id = Column(String, nullable=True, unique=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)
    paid_at = Column(Float, nullable=True)
    tickets_generated_at = Column(Float, nullable=True)
    tickets_sent_at = Column(Float, nullable=True)


class B2BOrderItem(Base):
    __tablename__ = "b2b_order_items"
    id = Column(String, primary_key=True)
    b2b_order_id = Column(String, ForeignKey("b2b_orders.id"),
                          nullable=False, index=True)
    ticket_id = Column(String, nullable=False)
    ticket_option_id = Column(String, nullable=True)
    # > 1 while aggregated, 1 once exploded into physical tickets
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)
    discount_percent = Column(Integer, nullable=False, default=0)
    total_price = Column(Money, nullable=False)
    ticket_code = Column(String, nullable=True, unique=True)
    qr_data = Column(String, nullable=True)
    ticket_url = Column(String, nullable=True)
    status = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class B2BOrderHistory(Base):
    __tablename__ = "b2b_order_history"
    id = Column(Integer, primary_key=True, autoincrement=True)
    b2b_order_id = Column(String, ForeignKey("b2b_orders.id"),
                          nullable=False, index=True)
    status = Column(String, nullable=False)
    changed_by = Column(String, nullable=True)
    note = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


# ----------------------------
# Payment linkage + outbox
# ----------------------------
class PaymentLink(Base):
    """One row per gateway transaction; the id space is shared by retail and
    B2B orders, so the owner is resolved here in one lookup."""
    __tablename__ = "payment_links"
    transaction_id = Column(String, primary_key=True)
    # retail | b2b
    subject_kind = Column(String, nullable=False)
    order_id = Column(String, nullable=False, index=True)
    created_at = Column(Float, nullable=False)


class FulfillmentTask(Base):
    __tablename__ = "fulfillment_tasks"
    id = Column(String, primary_key=True)
    # order_confirmation
    kind = Column(String, nullable=False)
    order_id = Column(String, nullable=False, index=True)
    # pending | running | done | failed
    status = Column(String, nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String, nullable=True)
    claimed_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)
