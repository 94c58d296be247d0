from .base import Base
from .payment import Payment
from .subscription import Subscription
from .usage_tracking import UsageTracking, UsageCounter
