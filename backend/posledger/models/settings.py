from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from posledger.money import money_str
from posledger.time_utils import to_utc_z

class BusinessSettings(db.Model):
    """
    Per-business pricing configuration.

    Rates are percentages (5 = 5%). minimum_commission_amount is compared
    against a vendor's pre-commission subtotal within one transaction.
    """
    __tablename__ = "business_settings"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, unique=True, index=True)

    tax_enabled = db.Column(db.Boolean, nullable=False, default=False)
    tax_rate = db.Column(db.Numeric(7, 4), nullable=False, default=Decimal("0"))

    vendor_commission_enabled = db.Column(db.Boolean, nullable=False, default=False)
    default_commission_rate = db.Column(db.Numeric(7, 4), nullable=False, default=Decimal("0"))
    minimum_commission_amount = db.Column(db.Numeric(14, 3), nullable=False, default=Decimal("0"))

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    business = db.relationship("Business", backref=db.backref("settings", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "tax_enabled": self.tax_enabled,
            "tax_rate": str(self.tax_rate),
            "vendor_commission_enabled": self.vendor_commission_enabled,
            "default_commission_rate": str(self.default_commission_rate),
            "minimum_commission_amount": money_str(self.minimum_commission_amount),
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
        }
