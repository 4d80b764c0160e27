"""
Localized user-facing message catalogue.

Templates use ``{placeholder}`` markers that are substituted in one
regex pass. A placeholder the caller does not supply stays in
the output as literal braces. Keys with a list of phrasings rotate by
the ``variant`` index (used for retry prompts).
"""

import re
from typing import Union

from flowbot.schemas.conversation_schema import Language

Template = Union[str, list[str]]

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")

MESSAGES: dict[str, dict[str, Template]] = {
    # --- Main flow ---
    "greeting": {
        "en": "Hi there! I'm {bot}. I can help you schedule an appointment, generate payment links, and answer questions. How can I help today?",
        "es": "¡Hola! Soy {bot}. Puedo ayudarte a reservar citas, generar enlaces de pago y responder dudas. ¿En qué puedo ayudarte?",
    },
    "askName": {
        "en": "Great! What's your name?",
        "es": "¡Perfecto! ¿Cuál es tu nombre?",
    },
    "askEmail": {
        "en": "Perfect, {name}! And your email?",
        "es": "¡Excelente, {name}! ¿Y tu correo electrónico?",
    },
    "askPhone": {
        "en": "Last thing - phone number? (You can skip this if you prefer)",
        "es": "Última cosa - ¿número de teléfono? (Puedes omitir esto si prefieres)",
    },
    "phoneDeclined": {
        "en": "No problem! Moving on.",
        "es": "¡Sin problema! Continuemos.",
    },
    "showingSlots": {
        "en": "Here's what I have this week:",
        "es": "Esto es lo que tengo esta semana:",
    },
    "showingNextWeek": {
        "en": "Here's what I have next week:",
        "es": "Esto es lo que tengo la próxima semana:",
    },
    "showingSpecificDate": {
        "en": "Here's what I have on {date}:",
        "es": "Esto es lo que tengo el {date}:",
    },
    "askSpecificDate": {
        "en": "Which date works for you? Please use the format YYYY-MM-DD.",
        "es": "¿Qué fecha te funciona? Usa el formato AAAA-MM-DD, por favor.",
    },
    "noSlots": {
        "en": "I don't have open slots for that period. Want to see next week or pick a specific date?",
        "es": "No tengo horarios disponibles para ese periodo. ¿Quieres ver la próxima semana o elegir una fecha específica?",
    },
    "slotPickHint": {
        "en": "Reply with the number of the slot that suits you.",
        "es": "Responde con el número del horario que prefieras.",
    },
    "slotNotFound": {
        "en": "I couldn't match that to one of the slots. Here they are again:",
        "es": "No pude asociar eso con uno de los horarios. Aquí están de nuevo:",
    },
    "slotUnavailable": {
        "en": "Sorry, that slot was just taken. Here's what is still open:",
        "es": "Lo siento, ese horario acaba de ocuparse. Esto es lo que sigue disponible:",
    },
    "confirmSlot": {
        "en": "Perfect! I have you down for {slot}. Confirm?",
        "es": "¡Perfecto! Te tengo agendado para {slot}. ¿Confirmas?",
    },
    "bookingConfirmed": {
        "en": "All set, {name}!\n\nYour appointment: {slot}\nConfirmation sent to: {email}\nReference: {ref}\n\nSee you then!",
        "es": "¡Todo listo, {name}!\n\nTu cita: {slot}\nConfirmación enviada a: {email}\nReferencia: {ref}\n\n¡Nos vemos!",
    },
    "schedulePromptDecline": {
        "en": "No worries! Let me know if you need anything else.",
        "es": "¡Sin problema! Si necesitas algo más, me avisas.",
    },
    "questionAcknowledge": {
        "en": "Good question! The team covers the details during an appointment, and I can book one for you whenever you like.",
        "es": "¡Buena pregunta! El equipo revisa los detalles durante una cita, y puedo agendarte una cuando quieras.",
    },
    "questionRepeated": {
        "en": "We touched on that already. Would you like me to book a time so the team can go over it with you?",
        "es": "Ya hablamos de eso. ¿Quieres que agende un horario para que el equipo lo revise contigo?",
    },
    "technicalSpecs": {
        "en": "Technical details depend on your setup, so the team walks through them with you. Want to schedule a call?",
        "es": "Los detalles técnicos dependen de tu caso, así que el equipo los revisa contigo. ¿Quieres agendar una llamada?",
    },
    "companyInfo": {
        "en": "I'm {bot}, the assistant for this team. I can book appointments, issue payment links, and answer general questions.",
        "es": "Soy {bot}, el asistente de este equipo. Puedo agendar citas, emitir enlaces de pago y responder preguntas generales.",
    },
    "messageTooLong": {
        "en": "That was a long message, so I only read the first part. Could you keep it a bit shorter?",
        "es": "Ese mensaje era largo, así que solo leí la primera parte. ¿Podrías hacerlo un poco más corto?",
    },
    "genericError": {
        "en": "Sorry, something went wrong on my side. Let's start over: how can I help?",
        "es": "Lo siento, algo falló de mi lado. Empecemos de nuevo: ¿en qué puedo ayudarte?",
    },

    # --- Guard rails and recovery ---
    "pricingGuardRail": {
        "en": "I'd love to discuss pricing! Best way is during an appointment where we can personalize options for you. Want to schedule?",
        "es": "¡Me encantaría hablar sobre precios! La mejor manera es durante una cita donde podemos personalizar opciones para ti. ¿Quieres agendar?",
    },
    "offTopicGuardRail": {
        "en": "I appreciate the chat! I'm here to help you schedule an appointment and answer questions about our services. What would you like to know?",
        "es": "¡Aprecio la charla! Estoy aquí para ayudarte a agendar una cita y responder preguntas sobre nuestros servicios. ¿Qué te gustaría saber?",
    },
    "harmfulGuardRail": {
        "en": "I'm here to help with appointment scheduling and product questions. Let's keep our conversation focused on that!",
        "es": "Estoy aquí para ayudarte con la programación de citas y preguntas sobre nuestros servicios. ¡Mantengamos la conversación enfocada en eso!",
    },
    "invalidIntent": {
        "en": "Let's tackle one thing at a time. Could you let me know what you'd like help with next?",
        "es": "Vamos paso a paso. ¿Podrías decirme con qué te gustaría que te ayude ahora?",
    },
    "stateRecovery": {
        "en": "To keep things clear, I'm returning to the main menu. Tell me if you want information or to book a time.",
        "es": "Para mantener todo claro, volvamos al punto principal. Dime si quieres información o agendar una cita.",
    },

    # --- Retry rotations ---
    "retryName": {
        "en": [
            "Could you tell me your name again?",
            "Just want to make sure - what's your name?",
            "One more time - your name?",
        ],
        "es": [
            "¿Podrías decirme tu nombre de nuevo?",
            "Solo para asegurarme - ¿cuál es tu nombre?",
            "Una vez más - ¿tu nombre?",
        ],
    },
    "retryEmail": {
        "en": [
            "That doesn't look quite right. Your email?",
            "Could you double-check that email?",
            "Hmm, try the email again?",
        ],
        "es": [
            "Eso no parece correcto. ¿Tu correo?",
            "¿Podrías verificar ese correo?",
            "Hmm, ¿intentas el correo de nuevo?",
        ],
    },
    "retryPhone": {
        "en": [
            "That phone number seems off. Try again?",
            "Could you check that number?",
            "One more time with the phone?",
        ],
        "es": [
            "Ese número parece incorrecto. ¿Intentas de nuevo?",
            "¿Podrías verificar ese número?",
            "¿Una vez más con el teléfono?",
        ],
    },

    # --- Payment sub-flow ---
    "paymentNoProducts": {
        "en": "I checked our catalog but there are no active products available for payment right now. Please contact support so we can get this resolved.",
        "es": "Revisé nuestro catálogo pero no hay productos activos disponibles para pago en este momento. Por favor contacta a soporte para resolverlo.",
    },
    "paymentAskProduct": {
        "en": "AVAILABLE PRODUCTS\n\n{options}\n\nTo select, type the number (e.g., 1) or product name.",
        "es": "PRODUCTOS DISPONIBLES\n\n{options}\n\nPara seleccionar, escribe el número (ej: 1) o el nombre del producto.",
    },
    "paymentAskName": {
        "en": "Before I generate the link for {product}, could you share the payer's full name?",
        "es": "Antes de generar el enlace para {product}, ¿podrías compartir el nombre completo del pagador?",
    },
    "paymentAskNameRetry": {
        "en": "I just need the full name for the payment link. Could you type it for me?",
        "es": "Necesito el nombre completo para el enlace de pago. ¿Podrías escribirlo?",
    },
    "paymentAskEmail": {
        "en": "Thanks {name}! What email should we use to send the receipt?",
        "es": "¡Gracias {name}! ¿Qué correo debemos usar para enviar el comprobante?",
    },
    "paymentAskEmailRetry": {
        "en": "I'm not sure that was an email address. Could you share it again?",
        "es": "No estoy seguro de que eso haya sido un correo electrónico. ¿Podrías compartirlo nuevamente?",
    },
    "paymentFlowReset": {
        "en": "Let's restart that payment request to make sure everything is accurate. Just tell me what you'd like to pay for again.",
        "es": "Reiniciemos la solicitud de pago para asegurarnos de que todo esté correcto. Solo dime nuevamente qué deseas pagar.",
    },
    "paymentConfirmDetails": {
        "en": "CONFIRM YOUR DETAILS\nProduct: {product}\nAmount: {amount}\nName: {name}\nEmail: {email}\n\nType \"confirm\" to generate the payment link.",
        "es": "CONFIRMA TUS DATOS\nProducto: {product}\nMonto: {amount}\nNombre: {name}\nEmail: {email}\n\nEscribe \"confirmar\" para generar el enlace de pago.",
    },
    "paymentLinkReady": {
        "en": "PAYMENT LINK GENERATED\n{product}\n{amount}\n\nOpen your payment link: {link}\n\nThe link updates in real time when payment is completed.",
        "es": "ENLACE DE PAGO GENERADO\n{product}\n{amount}\n\nAbre tu enlace de pago: {link}\n\nEl enlace se actualiza en tiempo real al completar el pago.",
    },
    "paymentLinkExisting": {
        "en": "EXISTING PAYMENT LINK\n{product}\n{amount}\n\nOpen your payment link: {link}\n\nThis link remains valid until payment is processed.",
        "es": "ENLACE DE PAGO EXISTENTE\n{product}\n{amount}\n\nAbre tu enlace de pago: {link}\n\nEl enlace seguirá válido hasta que se procese el pago.",
    },
    "paymentLinkError": {
        "en": "Sorry, something went wrong while generating the payment link. Could you try again in a moment or let a team member know?",
        "es": "Lo siento, ocurrió un problema al generar el enlace de pago. ¿Podrías intentarlo de nuevo en un momento o avisar a alguien del equipo?",
    },
    "paymentNewLinkConfirmation": {
        "en": "You already have an active payment link for {product} ({amount}).\n\nYour existing link: {link}\n\nWould you like to create a new payment link instead? Reply \"yes\" to start over or \"no\" to keep the current one.",
        "es": "Ya tienes un enlace de pago activo para {product} ({amount}).\n\nTu enlace existente: {link}\n\n¿Deseas crear un nuevo enlace de pago? Responde \"sí\" para empezar de nuevo o \"no\" para mantener el actual.",
    },

    # --- Payment history ---
    "paymentHistoryIntro": {
        "en": "Here are the latest {count} payment links:",
        "es": "Estos son los últimos {count} enlaces de pago:",
    },
    "paymentHistoryEmpty": {
        "en": "You do not have any payment links yet. Create one and I will list it here instantly.",
        "es": "Aún no tienes enlaces de pago. Crea uno y lo mostraré aquí de inmediato.",
    },
    "paymentHistoryMorePrompt": {
        "en": "Want more details? Say \"5 more\" to load additional links.",
        "es": "¿Quieres ver más? Di \"5 más\" para cargar enlaces adicionales.",
    },
    "paymentHistoryNoMore": {
        "en": "That's everything I have for now.",
        "es": "Eso es todo lo que tengo por ahora.",
    },
    "paymentHistoryFieldStatus": {"en": "Status", "es": "Estado"},
    "paymentHistoryFieldCustomer": {"en": "Customer", "es": "Cliente"},
    "paymentHistoryFieldLink": {"en": "Token", "es": "Token"},
    "paymentHistoryFieldNone": {"en": "Not provided", "es": "Sin datos"},
    "paymentStatusPending": {"en": "Pending", "es": "Pendiente"},
    "paymentStatusProcessing": {"en": "Processing", "es": "Procesando"},
    "paymentStatusCompleted": {"en": "Completed", "es": "Completado"},
    "paymentStatusFailed": {"en": "Failed", "es": "Fallido"},
    "paymentStatusExpired": {"en": "Expired", "es": "Vencido"},
    "paymentStatusCancelled": {"en": "Cancelled", "es": "Cancelado"},
}


def get_message(key: str, language: Union[Language, str], variant: int = 0) -> str:
    """Return the template for ``key`` in ``language``.

    Unknown languages fall back to English. List templates rotate by
    ``variant``.

    Raises:
        KeyError: If ``key`` is not in the catalogue.
    """
    entry = MESSAGES[key]
    lang = language.value if isinstance(language, Language) else str(language)
    template = entry.get(lang, entry["en"])
    if isinstance(template, list):
        return template[variant % len(template)]
    return template


def render(template: str, **values: object) -> str:
    """Substitute ``{name}`` markers in a single pass.

    Markers without a value stay as literal braces. Substituted text is
    never scanned again, so a value containing ``{email}`` is kept as is.
    """
    def substitute(match: re.Match) -> str:
        name = match.group(1)
        return str(values[name]) if name in values else match.group(0)

    return PLACEHOLDER_PATTERN.sub(substitute, template)


def message(key: str, language: Union[Language, str], variant: int = 0, **values: object) -> str:
    """Shorthand for ``render(get_message(key, language, variant), **values)``."""
    return render(get_message(key, language, variant), **values)
