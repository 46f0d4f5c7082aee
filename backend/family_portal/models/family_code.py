from sqlalchemy import Column, Integer, String, DateTime, Enum as SAEnum, ForeignKey, func
from family_portal.core.database import Base


class FamilyCode(Base):
    __tablename__ = "family_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(10), unique=True, nullable=False, comment="P-XXXXXXXX / E-XXXXXXXX")
    code_type = Column(SAEnum("parent", "child", name="family_code_type"), nullable=False)
    family_id = Column(Integer, ForeignKey("families.id", ondelete="CASCADE"), nullable=False, index=True)
    profile_id = Column(Integer, ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    status = Column(
        SAEnum("active", "suspended", "revoked", name="family_code_status"),
        nullable=False,
        default="active",
    )
    created_at = Column(DateTime, nullable=False, server_default=func.now())
