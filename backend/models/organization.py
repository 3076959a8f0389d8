"""
Organization model: the billed customer and its members.
"""

from sqlalchemy import Column, String, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from .base import BaseModel, enum_type
from .enums import MemberRole


class Organization(BaseModel):
    """Billed customer account."""

    __tablename__ = "organizations"

    name = Column(String(255), nullable=False, doc="Organization name")
    email = Column(String(255), nullable=True, doc="Billing contact email")
    gateway_customer_id = Column(
        String(255), unique=True, nullable=True, doc="Payment gateway customer id"
    )

    members = relationship(
        "OrganizationMember",
        back_populates="organization",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Organization(name='{self.name}')>"


class OrganizationMember(BaseModel):
    """User membership in an organization."""

    __tablename__ = "organization_members"

    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)
    email = Column(String(255), nullable=True)
    role = Column(enum_type(MemberRole), default=MemberRole.MEMBER, nullable=False)

    organization = relationship("Organization", back_populates="members")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_organization_member"),
    )
