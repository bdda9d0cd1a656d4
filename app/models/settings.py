from sqlalchemy import Column, String, Text, TIMESTAMP, Integer, Boolean, UniqueConstraint

from app.models.base import Base, utcnow


class AdminSetting(Base):
    __tablename__ = "admin_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String(50), nullable=False)  # EMAIL, SLACK, SMS, ...
    key = Column(String(100), nullable=False)
    value = Column(Text, nullable=True)
    is_encrypted = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("category", "key", name="uq_admin_settings_category_key"),)
