from sqlalchemy import Column, Integer, String, ForeignKey, Numeric, Boolean, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship

from cart_engine.data.database import Base


class CartItemModel(Base):
    __tablename__ = "cart_items"

    id = Column(String(36), primary_key=True)
    cart_id = Column(String(36), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    variant_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    product_id = Column(String(64), nullable=False)
    category_id = Column(String(64), nullable=True)
    tax_category = Column(String(32), nullable=False, default="STANDARD")

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    current_unit_price = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    position = Column(Integer, nullable=False, default=0)

    reservation_id = Column(String(36), nullable=True)
    reservation_expires_at = Column(DateTime(timezone=True), nullable=True)
    is_available = Column(Boolean, nullable=False, default=True)
    availability_reason = Column(String(32), nullable=True)
    available_quantity = Column(Integer, nullable=True)
    added_at = Column(DateTime(timezone=True), nullable=True)

    cart = relationship("CartModel", back_populates="items")

    __table_args__ = (UniqueConstraint("cart_id", "variant_id", "seller_id", name="u_cart_variant_seller"),)
