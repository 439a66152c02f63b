from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Text, JSON, Enum as SQLEnum, Index
from sqlalchemy.orm import relationship
import enum
from database import Base
from timezone_utils import utcnow


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "gerente"
    EMPLOYEE = "funcionario"


class Permission(str, enum.Enum):
    """Feature-level permission flags stored per user"""
    PDV = "pdv"
    PRODUCTS = "products"
    DASHBOARD = "dashboard"
    REPORTS = "reports"
    ESTOQUE = "estoque"
    FUNCIONARIOS = "funcionarios"
    FINANCEIRO = "financeiro"


class StockMovementType(str, enum.Enum):
    CHECKED_IN = "conferido"
    LOSS = "perda"


class PaymentMethod(str, enum.Enum):
    CASH = "dinheiro"
    CREDIT_CARD = "cartao_credito"
    DEBIT_CARD = "cartao_debito"
    PIX = "pix"
    TRANSFER = "transferencia"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    hashed_password = Column(String(255), nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.EMPLOYEE, nullable=False)
    # Serialized permission flags; normalized by the startup permission repair
    permissions = Column(JSON, nullable=True)
    photo_filename = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    sales = relationship("Sale", back_populates="user")
    stock_movements = relationship("StockMovement", back_populates="user")

    def __repr__(self):
        return f"<User {self.username} ({self.role})>"


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    description = Column(String(500), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)  # Lifetime total received, not current stock
    unit_cost = Column(Float, nullable=False, default=0.0)
    sale_price = Column(Float, nullable=False, default=0.0)
    category = Column(String(255), nullable=False)
    barcode_1 = Column(String(255), nullable=True)
    barcode_2 = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    sale_items = relationship("SaleItem", back_populates="product")
    stock_movements = relationship(
        "StockMovement", back_populates="product", cascade="all, delete-orphan", passive_deletes=True
    )
    sold = relationship(
        "ProductSales", back_populates="product", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index('idx_products_barcode_1', 'barcode_1'),
        Index('idx_products_barcode_2', 'barcode_2'),
        Index('idx_products_category', 'category'),
    )

    def __repr__(self):
        return f"<Product {self.id} {self.description}>"


class StockMovement(Base):
    """Append-only check-in / loss record"""
    __tablename__ = "estoque"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete='CASCADE'), nullable=False)
    movement_type = Column(SQLEnum(StockMovementType), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_value = Column(Float, nullable=False, default=0.0)
    total_value = Column(Float, nullable=False, default=0.0)  # Sale price x quantity
    notes = Column(Text, nullable=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    product = relationship("Product", back_populates="stock_movements")
    user = relationship("User", back_populates="stock_movements")

    __table_args__ = (
        Index('idx_estoque_product_type', 'product_id', 'movement_type'),
    )

    def __repr__(self):
        return f"<StockMovement {self.id} ({self.movement_type}) product={self.product_id}>"


class ProductSales(Base):
    """Cumulative quantity sold per product"""
    __tablename__ = "produto_vendas"

    product_id = Column(Integer, ForeignKey("products.id", ondelete='CASCADE'), primary_key=True)
    quantity_sold = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    product = relationship("Product", back_populates="sold")

    def __repr__(self):
        return f"<ProductSales product={self.product_id} sold={self.quantity_sold}>"


class Sale(Base):
    __tablename__ = "sales"

    id = Column(Integer, primary_key=True, index=True)
    total = Column(Float, nullable=False)
    discount = Column(Float, nullable=False, default=0.0)
    payment_method = Column(SQLEnum(PaymentMethod), nullable=False, default=PaymentMethod.CASH)
    user_id = Column(Integer, ForeignKey("users.id", ondelete='SET NULL'), nullable=True)
    customer_id = Column(Integer, ForeignKey("clientes.id"), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    user = relationship("User", back_populates="sales")
    customer = relationship("Customer", back_populates="sales")
    sale_items = relationship("SaleItem", back_populates="sale", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Sale {self.id} total={self.total}>"


class SaleItem(Base):
    __tablename__ = "sale_items"

    id = Column(Integer, primary_key=True, index=True)
    sale_id = Column(Integer, ForeignKey("sales.id", ondelete='CASCADE'), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False)  # Price at time of sale
    subtotal = Column(Float, nullable=False)

    sale = relationship("Sale", back_populates="sale_items")
    product = relationship("Product", back_populates="sale_items")

    def __repr__(self):
        return f"<SaleItem {self.id} (Sale: {self.sale_id}, Product: {self.product_id})>"


class Customer(Base):
    """Store membership; active status is derived from enrolled_at at read time"""
    __tablename__ = "clientes"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String(255), nullable=False)
    cpf = Column(String(11), unique=True, nullable=False, index=True)  # Digits only
    whatsapp = Column(String(20), nullable=False)
    enrolled_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    sales = relationship("Sale", back_populates="customer")

    __table_args__ = (
        Index('idx_clientes_name', 'full_name'),
    )

    def __repr__(self):
        return f"<Customer {self.full_name}>"
