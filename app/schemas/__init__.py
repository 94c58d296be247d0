from .billing import (
    PlanTier,
    PaymentPurpose,
    UsageKind,
    CreateOrderRequest,
    CreateTrackOrderRequest,
    CreateOrderResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    PaymentResponse,
    SubscriptionInfo,
    SubscriptionStatusResponse,
    LinkSubscriptionResponse,
    ModuleAccessResponse,
    ChapterUsageResponse,
    RecordUsageRequest,
    RecordUsageResponse,
)
