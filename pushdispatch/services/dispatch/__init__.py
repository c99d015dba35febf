from pushdispatch.services.dispatch.coordinator import (
    DispatchCoordinator,
    build_default_coordinator,
    run_lock,
)
from pushdispatch.services.dispatch.credentials import (
    CredentialCache,
    ServiceAccount,
    load_service_account,
    parse_service_account,
)
from pushdispatch.services.dispatch.gateway import (
    DeliveryOutcome,
    EndpointResult,
    PushGatewayClient,
    aggregate_endpoint_results,
    classify_gateway_response,
)
from pushdispatch.services.dispatch.messages import (
    NotificationType,
    build_data_payload,
    build_gateway_message,
    notification_action,
    notification_title,
)
from pushdispatch.services.dispatch.policy import RetryDecision, evaluate_retry_policy
from pushdispatch.services.dispatch.recipients import Recipient, RecipientStatus, resolve_recipient

__all__ = [
    "DispatchCoordinator",
    "build_default_coordinator",
    "run_lock",
    "CredentialCache",
    "ServiceAccount",
    "load_service_account",
    "parse_service_account",
    "DeliveryOutcome",
    "EndpointResult",
    "PushGatewayClient",
    "aggregate_endpoint_results",
    "classify_gateway_response",
    "NotificationType",
    "build_data_payload",
    "build_gateway_message",
    "notification_action",
    "notification_title",
    "RetryDecision",
    "evaluate_retry_policy",
    "Recipient",
    "RecipientStatus",
    "resolve_recipient",
]
