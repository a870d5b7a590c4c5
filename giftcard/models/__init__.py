# giftcard/models/__init__.py
# Import all models here so SQLAlchemy registers them into Base.metadata.

from giftcard.models.user import User  # noqa: F401
from giftcard.models.plan import Plan  # noqa: F401
from giftcard.models.order import Order  # noqa: F401

from giftcard.models.ledger import BalanceLedger  # noqa: F401
from giftcard.models.traffic_reset_log import TrafficResetLog  # noqa: F401

from giftcard.models.gift_card import GiftCardCode, GiftCardTemplate, GiftCardUsage  # noqa: F401
