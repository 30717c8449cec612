#cart_engine/data/models/cart.py
from sqlalchemy import Column, Integer, String, DateTime, Numeric, JSON, Index, text
from sqlalchemy.orm import relationship

from cart_engine.data.database import Base


class CartModel(Base):
    __tablename__ = "carts"

    id = Column(String(36), primary_key=True)
    # dokladnie jeden wlasciciel: user albo sesja goscia
    user_id = Column(String(64), nullable=True, index=True)
    session_id = Column(String(128), nullable=True, index=True)

    status = Column(String(20), nullable=False, default="active")
    version = Column(Integer, nullable=False, default=1)

    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")

    promotion_codes = Column(JSON, nullable=False, default=list)
    destination = Column(String(64), nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_activity_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    converted_order_id = Column(String(64), nullable=True)
    merged_into_cart_id = Column(String(36), nullable=True)

    items = relationship(
        "CartItemModel",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItemModel.position",
    )
    applied_promotions = relationship(
        "AppliedPromotionModel",
        back_populates="cart",
        cascade="all, delete-orphan",
    )

    # jeden aktywny koszyk na wlasciciela
    __table_args__ = (
        Index(
            "uq_active_cart_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active' AND user_id IS NOT NULL"),
            sqlite_where=text("status = 'active' AND user_id IS NOT NULL"),
        ),
        Index(
            "uq_active_cart_session",
            "session_id",
            unique=True,
            postgresql_where=text("status = 'active' AND session_id IS NOT NULL"),
            sqlite_where=text("status = 'active' AND session_id IS NOT NULL"),
        ),
        Index("idx_carts_status_expires", "status", "expires_at"),
    )
