from .account import Account  # noqa: F401
from .coupon import Coupon, CouponRedemption  # noqa: F401
from .payments import PaymentEvent, PaymentOrder  # noqa: F401
from .subscription import Subscription, SubscriptionEvent  # noqa: F401
from .usage import UsageEvent  # noqa: F401
