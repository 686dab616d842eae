"""Localized strings sent by the host itself."""
from __future__ import annotations

FALLBACK_LOCALE = "en-US"

MESSAGES: dict[str, dict[str, str]] = {
    "en-US": {
        "very_sorry_about_error": "I'm sorry, something went wrong. Let's try again.",
        "whats_your_question": "What would you like to know?",
        "welcome_back": "Welcome back! How can I help?",
        "who_am_i": "I am {title} ({bot_id}).",
    },
    "pt-BR": {
        "very_sorry_about_error": "Desculpe, ocorreu um erro. Vamos tentar novamente.",
        "whats_your_question": "O que você gostaria de saber?",
        "welcome_back": "Bem-vindo de volta! Como posso ajudar?",
        "who_am_i": "Eu sou {title} ({bot_id}).",
    },
}


def get_message(locale: str, key: str, **fmt) -> str:
    table = MESSAGES.get(locale or "", MESSAGES[FALLBACK_LOCALE])
    text = table.get(key, MESSAGES[FALLBACK_LOCALE][key])
    return text.format(**fmt) if fmt else text
