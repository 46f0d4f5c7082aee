from sqlalchemy import Column, Integer, String, DateTime, func
from family_portal.core.database import Base


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    max_children = Column(Integer, nullable=False, unique=True, comment="Child seats in this tier")
    price_monthly = Column(Integer, nullable=False, comment="List price per month (USD)")
    price_yearly = Column(Integer, nullable=False, comment="List price per year (USD)")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
