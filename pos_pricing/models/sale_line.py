"""Sale Line and per-line allocation models."""
from sqlalchemy import Column, BigInteger, Integer, String, Numeric, Boolean, Enum, ForeignKey, JSON
from sqlalchemy.orm import relationship
from pos_pricing.database import Base, IdType
import enum


class AllocationKind(enum.Enum):
    """Origin of an allocated reduction."""
    DISCOUNT = "DISCOUNT"
    PROMOTION = "PROMOTION"


class SaleLine(Base):
    """Sale Line (one cart line at checkout)."""
    
    __tablename__ = 'sale_line'
    
    id = Column(IdType, primary_key=True, autoincrement=True)
    sale_id = Column(BigInteger, ForeignKey('sale.id', ondelete='CASCADE'), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    product_id = Column(String(64), nullable=False)
    name = Column(String, nullable=False)
    category = Column(String, nullable=True)
    kind = Column(String(20), nullable=False, default='product')
    qty = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 4), nullable=False)
    addon_unit_cost = Column(Numeric(18, 6), nullable=False, default=0)
    addons = Column(JSON, nullable=True)
    is_from_bundle = Column(Boolean, nullable=False, default=False)
    bundle_group_id = Column(String(64), nullable=True)
    
    # Relationships
    sale = relationship('Sale', back_populates='lines')
    allocations = relationship(
        'SaleLineAllocation', back_populates='line', cascade='all, delete-orphan',
        order_by='SaleLineAllocation.id'
    )
    
    def __repr__(self):
        return f"<SaleLine(id={self.id}, name='{self.name}', qty={self.qty})>"


class SaleLineAllocation(Base):
    """Discount or promotion amount allocated to some units of a sale line."""
    
    __tablename__ = 'sale_line_allocation'
    
    id = Column(IdType, primary_key=True, autoincrement=True)
    sale_line_id = Column(BigInteger, ForeignKey('sale_line.id', ondelete='CASCADE'), nullable=False, index=True)
    kind = Column(Enum(AllocationKind, name='allocation_kind'), nullable=False)
    source_id = Column(String(64), nullable=True)
    name = Column(String, nullable=False)
    qty = Column(Integer, nullable=False)
    amount = Column(Numeric(18, 6), nullable=False)
    
    line = relationship('SaleLine', back_populates='allocations')
    
    def __repr__(self):
        return f"<SaleLineAllocation(kind={self.kind.value}, name='{self.name}', amount={self.amount})>"
