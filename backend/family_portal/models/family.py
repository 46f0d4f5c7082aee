from sqlalchemy import Column, Integer, String, DateTime, func
from family_portal.core.database import Base


class Family(Base):
    __tablename__ = "families"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
