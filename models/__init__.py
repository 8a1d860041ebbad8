from sqlalchemy.orm import declarative_base

Base = declarative_base()

# --------------------------------------------------
# Accounts
# --------------------------------------------------
from .users import User  # noqa: F401

# --------------------------------------------------
# Core commerce / orders
# --------------------------------------------------
from .orders import Order, OrderAddon  # noqa: F401
from .order_revisions import OrderRevision  # noqa: F401
from .song_versions import SongVersion  # noqa: F401

# --------------------------------------------------
# Promo codes & affiliate program
# --------------------------------------------------
from .affiliates import Affiliate  # noqa: F401
from .promo_codes import PromoCode, PromoCodeUsage  # noqa: F401
from .referral_events import ReferralEvent  # noqa: F401
from .commissions import Commission  # noqa: F401
from .affiliate_payouts import AffiliatePayout  # noqa: F401
