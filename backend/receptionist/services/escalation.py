ESCALATION_KEYWORDS = [
    "emergency",
    "urgent",
    "speak to a manager",
    "talk to a human",
    "real person",
    "complaint",
    "lawyer",
    "refund",
    "ambulance",
    "flooding",
    "gas leak",
]


def detect_escalation_keywords(text: str) -> bool:
    t = (text or "").lower()
    return any(k in t for k in ESCALATION_KEYWORDS)
