"""
Free-text matchers used inside the payment sub-flow.

Once a payment flow is active the orchestrator reads raw input directly:
product choices, payer names, emails and yes/no answers. Every yes/no
decision goes through ``classify_reply``.
"""

import re
from enum import Enum
from typing import Optional, Sequence, Union

from flowbot.conversation.profile_fields import normalize_email, normalize_name, validate_email, validate_name
from flowbot.schemas.conversation_schema import Language
from flowbot.schemas.payment_schema import Product

PAYMENT_INTENT_PATTERN = re.compile(
    r"(dame|necesito|quiero|genera|crea)\s+(un\s+)?(link|enlace)\s+de\s+pago"
    r"|link de pago|enlace de pago|payment link"
    r"|\bpay\b|\bpayment\b|\bpaying\b|\bbuy\b|\bpurchase\b|\bcheckout\b"
    r"|\bpagar\b|\bpago\b|\bcomprar\b|\bcobrar\b",
    re.IGNORECASE,
)

PAYMENT_HISTORY_PATTERN = re.compile(
    r"payment history|my payments|payment links|paid links"
    r"|historial de pagos|mis pagos|links pagados|enlaces de pago generados|mis enlaces",
    re.IGNORECASE,
)

HISTORY_MORE_PATTERN = re.compile(
    r"^\s*(5\s+)?(more|m[aá]s|next|siguientes?)(\s+(links|enlaces))?\s*[.!]?\s*$",
    re.IGNORECASE,
)

NUMERIC_CHOICE_PATTERN = re.compile(r"^\s*#?(\d+)\s*[.)]?\s*$")
MIN_PARTIAL_SELECTION_LENGTH = 3


class ReplyKind(str, Enum):
    AFFIRMATIVE = "affirmative"
    NEGATIVE = "negative"
    OTHER = "other"


_REPLY_PATTERNS: dict[Language, dict[ReplyKind, re.Pattern]] = {
    Language.EN: {
        ReplyKind.AFFIRMATIVE: re.compile(
            r"^(yes|y|yeah|yep|ok|okay|sure|confirm|confirmed|correct|"
            r"that's right|that's correct|perfect)$"
        ),
        ReplyKind.NEGATIVE: re.compile(
            r"^(no|n|nope|wrong|incorrect|change|modify|edit|again)$"
        ),
    },
    Language.ES: {
        ReplyKind.AFFIRMATIVE: re.compile(
            r"^(s[ií]|claro|afirmativo|ok|vale|confirmar|confirmo|correcto|"
            r"est[aá] bien|est[aá] correcto|perfecto)$"
        ),
        ReplyKind.NEGATIVE: re.compile(
            r"^(no|n|negativo|incorrecto|corregir|cambiar|modificar|editar|"
            r"otra vez)$"
        ),
    },
}

# Extra answers only meaningful when asked whether to replace an existing link
_NEW_LINK_PATTERNS: dict[Language, dict[ReplyKind, re.Pattern]] = {
    Language.EN: {
        ReplyKind.AFFIRMATIVE: re.compile(r"^(new|new link|a new one)$"),
        ReplyKind.NEGATIVE: re.compile(r"^(keep|keep it|keep the current one)$"),
    },
    Language.ES: {
        ReplyKind.AFFIRMATIVE: re.compile(r"^(nuevo|nuevo enlace|uno nuevo)$"),
        ReplyKind.NEGATIVE: re.compile(r"^(mantener|conservar|mantener el actual)$"),
    },
}


def _normalize_reply(text: str) -> str:
    cleaned = re.sub(r"[.!?¡¿,]+", " ", text.strip().lower())
    return " ".join(cleaned.split())


def classify_reply(
    text: str, language: Union[Language, str] = Language.EN, new_link: bool = False
) -> ReplyKind:
    """Classify a confirmation answer as affirmative, negative or other.

    The session language is tried first, then the other language, so a
    user answering "yes" in a Spanish session is still understood.
    With ``new_link`` set, "new" and "keep" style answers to the
    replace-existing-link question are understood as well.
    """
    normalized = _normalize_reply(text)
    if not normalized:
        return ReplyKind.OTHER

    primary = Language(language)
    order = [primary] + [lang for lang in Language if lang != primary]
    for lang in order:
        pattern_sets = [_REPLY_PATTERNS[lang]]
        if new_link:
            pattern_sets.append(_NEW_LINK_PATTERNS[lang])
        for patterns in pattern_sets:
            if patterns[ReplyKind.AFFIRMATIVE].match(normalized):
                return ReplyKind.AFFIRMATIVE
            if patterns[ReplyKind.NEGATIVE].match(normalized):
                return ReplyKind.NEGATIVE
    return ReplyKind.OTHER


def is_payment_intent(text: str) -> bool:
    return bool(PAYMENT_INTENT_PATTERN.search(text))


def is_history_request(text: str) -> bool:
    return bool(PAYMENT_HISTORY_PATTERN.search(text))


def is_history_more(text: str) -> bool:
    return bool(HISTORY_MORE_PATTERN.match(text))


def is_valid_payer_name(text: str) -> bool:
    """Rejects bare numbers so an amount typed in place of a name is refused."""
    return validate_name(text)


def is_valid_payer_email(text: str) -> bool:
    return validate_email(text)


def clean_payer_name(text: str) -> str:
    return normalize_name(text)


def clean_payer_email(text: str) -> str:
    return normalize_email(text)


def extract_product_selection(text: str, products: Sequence[Product]) -> Optional[Product]:
    """Resolve a 1-based index, or a reply naming a product, to a catalog product.

    A reply matches when it contains the product name or code, or when it
    is a whole word of the name or code at least
    ``MIN_PARTIAL_SELECTION_LENGTH`` characters long ("membership"). Short
    replies such as "ok" never select a product by accident.
    """
    if not products:
        return None

    numeric = NUMERIC_CHOICE_PATTERN.match(text)
    if numeric:
        index = int(numeric.group(1))
        if 1 <= index <= len(products):
            return products[index - 1]
        return None

    query = text.strip().lower()
    if not query:
        return None
    for product in products:
        name = product.name.lower()
        code = product.product_code.lower()
        if name in query or (code and code in query):
            return product
    if len(query) < MIN_PARTIAL_SELECTION_LENGTH:
        return None
    word = re.compile(rf"(?<!\w){re.escape(query)}(?!\w)")
    for product in products:
        if word.search(product.name.lower()) or word.search(product.product_code.lower()):
            return product
    return None
