"""Refund ledger models."""
from sqlalchemy import Column, BigInteger, Integer, String, Numeric, Boolean, DateTime, Text, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from pos_pricing.database import Base, IdType


class SaleRefund(Base):
    """
    One accepted refund of a sale.
    
    The ledger of a sale is the union of its refunds' lines; it bounds
    every further refund.
    """
    
    __tablename__ = 'sale_refund'
    
    id = Column(IdType, primary_key=True, autoincrement=True)
    sale_id = Column(BigInteger, ForeignKey('sale.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    amount = Column(Numeric(10, 2), nullable=False)
    is_full = Column(Boolean, nullable=False, default=False)
    reason = Column(Text, nullable=True)
    
    sale = relationship('Sale', back_populates='refunds')
    lines = relationship('SaleRefundLine', back_populates='refund', cascade='all, delete-orphan')
    
    def __repr__(self):
        return f"<SaleRefund(id={self.id}, sale_id={self.sale_id}, amount={self.amount})>"


class SaleRefundLine(Base):
    """Units of one item name returned by a refund."""
    
    __tablename__ = 'sale_refund_line'
    
    id = Column(IdType, primary_key=True, autoincrement=True)
    refund_id = Column(BigInteger, ForeignKey('sale_refund.id', ondelete='CASCADE'), nullable=False, index=True)
    item_name = Column(String, nullable=False)
    qty = Column(Integer, nullable=False)
    amount = Column(Numeric(18, 6), nullable=False)
    
    refund = relationship('SaleRefund', back_populates='lines')
    
    def __repr__(self):
        return f"<SaleRefundLine(item_name='{self.item_name}', qty={self.qty})>"
