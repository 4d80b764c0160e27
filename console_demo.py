"""
Offline console demo: chat with the conversation engine in a terminal.

Uses the real engine, transition table, payment orchestrator and session
store with the keyword classifier, an in-memory calendar and an
in-memory payment gateway. No API keys or network calls are needed
unless LANGUAGE_LLM_FALLBACK is enabled.

Usage:
    python console_demo.py
    python console_demo.py --scenario payment
    python console_demo.py --scenario spanish --tenant acme --session demo-2
"""

import argparse
import asyncio
import uuid
from pathlib import Path

from flowbot.config import settings
from flowbot.conversation.engine import ConversationEngine
from flowbot.conversation.language import LanguageDetector
from flowbot.conversation.state_store import SessionStateStore
from flowbot.payments.gateway import InMemoryPaymentGateway
from flowbot.schemas.conversation_schema import ConversationState
from flowbot.schemas.payment_schema import Product, TenantProfile
from flowbot.storage.metadata_store import InMemoryMetadataStore, JsonFileMetadataStore, MetadataStore
from flowbot.tools.intent_classifier import KeywordIntentClassifier
from flowbot.tools.language_detector import build_language_detector

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

DEFAULT_TENANT = "demo-tenant"

DEMO_PRODUCTS = [
    Product(id="prod-membership", name="Monthly Membership", product_code="MEM-01", amount_cents=9900),
    Product(id="prod-consult", name="Strategy Consultation", product_code="CON-60", amount_cents=15000),
    Product(id="prod-workshop", name="Team Workshop", product_code="WRK-01", amount_cents=45000),
]

# Pre-scripted scenarios for --scenario flag
SCENARIOS: dict[str, list[str]] = {
    "booking": [
        "Hello",
        "I'd like to book an appointment",
        "Maria Garcia",
        "maria@example.com",
        "skip",
        "next week",
        "2",
        "yes",
    ],
    "payment": [
        "Hi",
        "I need a payment link",
        "1",
        "Maria Garcia",
        "maria@example.com",
        "confirm",
        "show my payment links",
        "thanks",
    ],
    "spanish": [
        "Hola",
        "¿Cuánto cuesta?",
        "sí",
        "Juan Pérez",
        "juan@ejemplo.com",
        "prefiero no",
        "1",
        "sí",
    ],
}


def _build_metadata_store() -> MetadataStore:
    if settings.scheduling.metadata_store_path:
        return JsonFileMetadataStore(Path(settings.scheduling.metadata_store_path))
    return InMemoryMetadataStore()


def build_engine(tenant_id: str) -> ConversationEngine:
    """Wire an engine with in-memory collaborators for ``tenant_id``."""
    store = SessionStateStore(_build_metadata_store())
    gateway = InMemoryPaymentGateway(
        products={tenant_id: DEMO_PRODUCTS},
        tenants=[TenantProfile(id=tenant_id, subdomain=tenant_id)],
    )
    return ConversationEngine(
        store,
        KeywordIntentClassifier(),
        gateway,
        language_detector=LanguageDetector(build_language_detector()),
    )


class ConsoleSession:
    """Drives one chat session against the engine."""

    def __init__(self, tenant_id: str, session_id: str) -> None:
        self.tenant_id = tenant_id
        self.session_id = session_id
        self.engine = build_engine(tenant_id)

    def bot_say(self, text: str) -> None:
        print(f"{GREEN}{BOLD}[{settings.bot.name}]{RESET} {GREEN}{text}{RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    async def send(self, text: str) -> ConversationState:
        print(f"\n{BLUE}[User] {RESET}{text}")
        reply, state = await self.engine.process_message(self.session_id, self.tenant_id, text)
        self.bot_say(reply)
        self.system_log(
            f"Step: {state.current_step.value} | Payment: {state.payment_context.stage.value} "
            f"| Language: {state.language.value}"
        )
        return state

    def _banner(self, title: str) -> None:
        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  {settings.bot.name.upper()} - {title}{RESET}")
        print(f"{BOLD}  Tenant: {self.tenant_id} | Session: {self.session_id}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")

    def _summary(self, state: ConversationState) -> None:
        trace = [state.transition_log[0].from_step.value] if state.transition_log else []
        trace += [record.to_step.value for record in state.transition_log]
        print(f"\n{BOLD}{'=' * 60}{RESET}")
        print(f"{DIM}  Step trace: {' -> '.join(trace) or state.current_step.value}{RESET}")
        if state.appointment_data.booking_ref:
            print(f"{DIM}  Booking: {state.appointment_data.booking_ref}{RESET}")
        if state.payment_context.link_url:
            print(f"{DIM}  Payment link: {state.payment_context.link_url}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")

    async def run_scenario(self, scenario: str) -> None:
        """Auto-play a pre-scripted scenario for demo purposes."""
        steps = SCENARIOS.get(scenario)
        if not steps:
            print(f"{RED}Unknown scenario: {scenario}{RESET}")
            return

        self._banner(f"Scenario: {scenario}")
        state = None
        for step in steps:
            state = await self.send(step)
        if state is not None:
            self._summary(state)

    async def run(self) -> None:
        self._banner("Console Demo")
        print(f"{YELLOW}  Type 'quit' to exit, 'reset' to start over{RESET}")

        state = None
        while True:
            user_input = (await asyncio.to_thread(input, f"\n{BLUE}[User] {RESET}")).strip()
            if not user_input:
                continue
            if user_input.lower() in ("quit", "exit", "q"):
                break
            if user_input.lower() == "reset":
                await self.engine.reset_session(self.session_id, self.tenant_id)
                self.system_log("Session reset")
                continue

            reply, state = await self.engine.process_message(
                self.session_id, self.tenant_id, user_input
            )
            self.bot_say(reply)
            self.system_log(
                f"Step: {state.current_step.value} | Payment: {state.payment_context.stage.value}"
            )

        if state is not None:
            self._summary(state)
        print(f"\n{DIM}Session ended.{RESET}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Offline console demo")
    parser.add_argument(
        "--scenario",
        choices=sorted(SCENARIOS),
        default=None,
        help="Auto-play a pre-scripted scenario instead of interactive mode",
    )
    parser.add_argument("--tenant", default=DEFAULT_TENANT, help="Tenant id for the session")
    parser.add_argument("--session", default=None, help="Session id (random if omitted)")
    args = parser.parse_args()

    session = ConsoleSession(args.tenant, args.session or f"console-{uuid.uuid4().hex[:8]}")
    if args.scenario:
        asyncio.run(session.run_scenario(args.scenario))
    else:
        asyncio.run(session.run())


if __name__ == "__main__":
    main()
