from flowbot.payments.flow_table import PaymentEvent, next_stage
from flowbot.payments.gateway import InMemoryPaymentGateway, PaymentGateway
from flowbot.payments.orchestrator import PaymentFlowOrchestrator, PaymentTurn

__all__ = [
    "PaymentFlowOrchestrator",
    "PaymentTurn",
    "PaymentGateway",
    "InMemoryPaymentGateway",
    "PaymentEvent",
    "next_stage",
]
