"""Raw promotion and discount records as delivered by the catalog feed."""
from sqlalchemy import Column, BigInteger, Integer, String, Numeric, DateTime, JSON
from sqlalchemy.sql import func
from pos_pricing.database import Base, IdType


class PromotionRecord(Base):
    """
    Automatic promotion as stored by the catalog feed.
    
    Values stay in their raw shape ("50%", "₱10", comma separated product
    names); the catalog adapter normalizes them.
    """
    
    __tablename__ = 'promotion_record'
    
    id = Column(IdType, primary_key=True, autoincrement=True)
    store_id = Column(BigInteger, nullable=False, index=True)
    name = Column(String, nullable=False)
    promotion_type = Column(String(30), nullable=False)  # percentage | fixed | bogo
    value = Column(String(30), nullable=True)
    products = Column(String, nullable=True)
    application_type = Column(String(30), nullable=True)
    buy_quantity = Column(Integer, nullable=True)
    get_quantity = Column(Integer, nullable=True)
    bogo_discount_type = Column(String(20), nullable=True)
    bogo_discount_value = Column(Numeric(10, 2), nullable=True)
    min_quantity = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default='active')
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_to = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    
    def to_raw(self):
        """Raw record in the shape the adapter accepts."""
        return {
            'id': self.id,
            'name': self.name,
            'promotion_type': self.promotion_type,
            'value': self.value,
            'products': self.products,
            'application_type': self.application_type,
            'buy_quantity': self.buy_quantity,
            'get_quantity': self.get_quantity,
            'bogo_discount_type': self.bogo_discount_type,
            'bogo_discount_value': self.bogo_discount_value,
            'min_quantity': self.min_quantity,
            'status': self.status,
            'valid_from': self.valid_from.isoformat() if self.valid_from else None,
            'valid_to': self.valid_to.isoformat() if self.valid_to else None,
        }
    
    def __repr__(self):
        return f"<PromotionRecord(id={self.id}, name='{self.name}', type='{self.promotion_type}')>"


class DiscountRecord(Base):
    """Manual discount an operator can apply at the register."""
    
    __tablename__ = 'discount_record'
    
    id = Column(IdType, primary_key=True, autoincrement=True)
    store_id = Column(BigInteger, nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(String(30), nullable=False)  # percentage | fixed_amount
    discount = Column(String(30), nullable=False)
    min_spend = Column(Numeric(10, 2), nullable=True)
    application_type = Column(String(30), nullable=True)
    applicable_products = Column(JSON, nullable=True)
    applicable_categories = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default='active')
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    
    def to_raw(self):
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'discount': self.discount,
            'minSpend': self.min_spend,
            'application_type': self.application_type,
            'applicable_products': self.applicable_products or [],
            'applicable_categories': self.applicable_categories or [],
            'status': self.status,
        }
    
    def __repr__(self):
        return f"<DiscountRecord(id={self.id}, name='{self.name}')>"
