from sqlalchemy import Column, Integer, String, ForeignKey, Numeric, Boolean, DateTime, JSON
from sqlalchemy.orm import relationship

from cart_engine.data.database import Base


class AppliedPromotionModel(Base):
    __tablename__ = "applied_promotions"

    id = Column(String(36), primary_key=True)
    cart_id = Column(String(36), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    cart_item_id = Column(String(36), nullable=True)

    promotion_id = Column(String(64), nullable=False, index=True)
    promotion_code = Column(String(50), nullable=True)
    promotion_name = Column(String(255), nullable=False)
    discount_type = Column(String(32), nullable=False)
    discount_value = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    stackable = Column(Boolean, nullable=False, default=False)

    # lista {item_id, amount, units} + fakty, dla ktorych promocja weszla
    line_breakdown = Column(JSON, nullable=False, default=list)
    eligibility_snapshot = Column(JSON, nullable=False, default=dict)
    applied_at = Column(DateTime(timezone=True), nullable=False)

    cart = relationship("CartModel", back_populates="applied_promotions")
