from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.crm.models import Base

CUSTOMER_TYPES = ("DEALER", "COMPANY", "PRIVATE")


class Customer(Base):
    """
    Aggregate root. Addresses and contact persons live and die with it.
    `version` is bumped on every write of the row and checked by the ORM
    (optimistic concurrency); sub-entity edits touch `updated_at` so they
    go through the same check.
    """

    __tablename__ = "customers"
    __table_args__ = (
        Index("idx_customers_type", "type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    int_nr: Mapped[str] = mapped_column(String(10), nullable=False, unique=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    addresses: Mapped[list["CustomerAddress"]] = relationship(
        "CustomerAddress",
        back_populates="customer",
        cascade="all, delete-orphan",
        order_by="CustomerAddress.id",
        lazy="selectin",
    )
    contact_persons: Mapped[list["CustomerContactPerson"]] = relationship(
        "CustomerContactPerson",
        back_populates="customer",
        cascade="all, delete-orphan",
        order_by="CustomerContactPerson.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}


class CustomerAddress(Base):
    __tablename__ = "customer_addresses"
    __table_args__ = (
        Index("idx_customer_addresses_customer_id", "customer_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)

    company_name: Mapped[str | None] = mapped_column(String(50), nullable=True)
    country: Mapped[str] = mapped_column(String(50), nullable=False)
    zip: Mapped[str] = mapped_column(String(5), nullable=False)
    city: Mapped[str] = mapped_column(String(50), nullable=False)
    street: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(50), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    fax: Mapped[str | None] = mapped_column(String(20), nullable=True)

    customer: Mapped[Customer] = relationship("Customer", back_populates="addresses")


class CustomerContactPerson(Base):
    __tablename__ = "customer_contact_persons"
    __table_args__ = (
        Index("idx_customer_contact_persons_customer_id", "customer_id"),
        Index("idx_customer_contact_persons_address_id", "address_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)

    first_name: Mapped[str] = mapped_column(String(50), nullable=False)
    last_name: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str | None] = mapped_column(String(50), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    birth_date: Mapped[str | None] = mapped_column(String(10), nullable=True)  # YYYY-MM-DD

    # Weak reference: lookup only, never ownership.
    address_id: Mapped[int | None] = mapped_column(
        ForeignKey("customer_addresses.id", ondelete="SET NULL"),
        nullable=True,
    )

    customer: Mapped[Customer] = relationship("Customer", back_populates="contact_persons")
    address: Mapped[CustomerAddress | None] = relationship("CustomerAddress", foreign_keys=[address_id])
