# Import models here so Alembic can discover metadata.
from app.models.user import User  # noqa: F401
from app.models.product import Product  # noqa: F401

# Tracking: links, clicks, conversions
from app.models.referral_link import ReferralLink  # noqa: F401
from app.models.click_event import ClickEvent  # noqa: F401
from app.models.conversion_event import ConversionEvent  # noqa: F401

# Commission lifecycle + ledger
from app.models.commission import Commission  # noqa: F401
from app.models.commission_adjustment import CommissionAdjustment  # noqa: F401
