"""Decide whether a new message should keep the chat's running conversation."""

REFERENCE_CUES = (
    "previous",
    "before",
    "earlier",
    "last time",
    "you said",
    "i said",
    "you mentioned",
    "as i mentioned",
    "remember",
)

QUESTION_WORDS = ("why", "how", "what", "when", "where", "who", "which")

SHORT_MESSAGE_TOKENS = 5


def needs_context(new_message: str, thread_has_prior_messages: bool) -> bool:
    """
    Return True when prior dialogue should be carried into this message.

    This is a cost heuristic, not an intent classifier: a False answer makes
    the caller start a fresh conversation and save tokens, at the price of
    occasionally dropping context that was wanted. Matching is on plain
    substrings and prefixes, so "however" counts as a "how" question.
    """
    if not thread_has_prior_messages:
        return False

    text = new_message.strip().lower()

    if any(cue in text for cue in REFERENCE_CUES):
        return True

    if text.startswith(QUESTION_WORDS):
        return True

    return len(text.split()) < SHORT_MESSAGE_TOKENS
