"""User-facing text for card failures."""
from typing import Optional


GENERIC_CARD_MESSAGE = "Your payment could not be processed. Please check your card details and try again."

_BY_CODE = {
    "card_declined": "Your card was declined. Please try another payment method.",
    "insufficient_funds": "Insufficient funds on your card. Please try another payment method.",
    "expired_card": "Your card has expired. Please use a different card.",
    "incorrect_cvc": "Your card's security code is incorrect. Please check it and try again.",
    "processing_error": "An error occurred while processing your card. Please try again in a moment.",
}


def translate_card_error(
    code: Optional[str] = None,
    decline_code: Optional[str] = None,
    message: Optional[str] = None,
) -> str:
    """Map provider card error codes (or raw messages) to display text."""
    for key in (decline_code, code):
        if key and key in _BY_CODE:
            return _BY_CODE[key]

    lowered = (message or "").lower()
    if "insufficient funds" in lowered:
        return _BY_CODE["insufficient_funds"]
    if "card was declined" in lowered:
        return _BY_CODE["card_declined"]
    if "processing error" in lowered:
        return _BY_CODE["processing_error"]
    return message or GENERIC_CARD_MESSAGE
