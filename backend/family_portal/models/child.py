from sqlalchemy import Column, Integer, String, Date, DateTime, ForeignKey, func
from family_portal.core.database import Base


class Child(Base):
    __tablename__ = "children"

    id = Column(Integer, primary_key=True, autoincrement=True)
    family_id = Column(Integer, ForeignKey("families.id", ondelete="CASCADE"), nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    birth_date = Column(Date, nullable=True)
    city = Column(String(100), nullable=True)
    country = Column(String(100), nullable=True)
    family_code_id = Column(Integer, ForeignKey("family_codes.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
