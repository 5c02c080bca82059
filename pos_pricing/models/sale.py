"""Sale model."""
from sqlalchemy import Column, BigInteger, String, Numeric, DateTime, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from pos_pricing.database import Base, IdType
import enum


class SaleStatus(enum.Enum):
    """Sale refund lifecycle."""
    COMPLETED = "COMPLETED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"
    REFUND_EXPIRED = "REFUND_EXPIRED"


class Sale(Base):
    """Completed sale with its full allocation breakdown."""
    
    __tablename__ = 'sale'
    
    id = Column(IdType, primary_key=True, autoincrement=True)
    store_id = Column(BigInteger, nullable=False, index=True)
    cart_id = Column(String(64), nullable=True)
    cashier_name = Column(String(120), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    status = Column(Enum(SaleStatus, name='sale_status'), nullable=False, default=SaleStatus.COMPLETED)
    payment_method = Column(String(20), nullable=False, default='CASH', server_default='CASH')
    
    # Totals as computed at checkout (components unrounded, total rounded once)
    subtotal = Column(Numeric(18, 6), nullable=False)
    addons_cost = Column(Numeric(18, 6), nullable=False, default=0)
    manual_discount = Column(Numeric(18, 6), nullable=False, default=0)
    promotional_discount = Column(Numeric(18, 6), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False)
    
    # Idempotency key to prevent duplicate sales on double-submit
    idempotency_key = Column(String(64), unique=True, nullable=True, index=True)
    
    # Relationships
    lines = relationship(
        'SaleLine', back_populates='sale', cascade='all, delete-orphan', order_by='SaleLine.position'
    )
    refunds = relationship(
        'SaleRefund', back_populates='sale', cascade='all, delete-orphan', order_by='SaleRefund.id'
    )

    def __repr__(self):
        return f"<Sale(id={self.id}, total={self.total}, status={self.status.value})>"
