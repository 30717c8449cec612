from sqlalchemy import Column, Integer, String, DateTime, Index

from cart_engine.data.database import Base


class VariantStockModel(Base):
    """Licznik zarezerwowanej ilosci wariantu = suma aktywnych rezerwacji."""

    __tablename__ = "variant_stock"

    variant_id = Column(String(64), primary_key=True)
    reserved_qty = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class InventoryReservationModel(Base):
    __tablename__ = "inventory_reservations"

    id = Column(String(36), primary_key=True)
    variant_id = Column(String(64), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)

    reference_type = Column(String(20), nullable=False)  # cart, order
    reference_id = Column(String(64), nullable=False)
    cart_item_id = Column(String(36), nullable=True, index=True)

    status = Column(String(20), nullable=False, default="active")  # active, expired, converted, released
    expires_at = Column(DateTime(timezone=True), nullable=True)

    parent_reservation_id = Column(String(36), nullable=True)
    converted_to_reservation_id = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    released_at = Column(DateTime(timezone=True), nullable=True)
    release_reason = Column(String(100), nullable=True)

    __table_args__ = (
        Index("idx_reservations_reference", "reference_type", "reference_id"),
        Index("idx_reservations_status_expires", "status", "expires_at"),
    )
