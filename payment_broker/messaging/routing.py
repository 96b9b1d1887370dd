"""
Topic-exchange routing key matching.

Routing keys are dot-delimited words. In binding patterns ``*`` matches
exactly one word and ``#`` matches zero or more words.
"""
from functools import lru_cache
from typing import Tuple

SINGLE_WORD = "*"
MULTI_WORD = "#"


def split_key(key: str) -> Tuple[str, ...]:
    """Split a routing key or pattern into its words."""
    if key == "":
        return ()
    return tuple(key.split("."))


def topic_matches(pattern: str, routing_key: str) -> bool:
    """
    Check whether a topic binding pattern matches a routing key.

    Examples:
        >>> topic_matches("payment.*", "payment.refund")
        True
        >>> topic_matches("payment.*", "payment.credit.approve")
        False
        >>> topic_matches("payment.#", "payment.credit.approve")
        True
    """
    return _match(split_key(pattern), split_key(routing_key))


@lru_cache(maxsize=1024)
def _match(pattern: Tuple[str, ...], words: Tuple[str, ...]) -> bool:
    if not pattern:
        return not words

    head, rest = pattern[0], pattern[1:]
    if head == MULTI_WORD:
        # "#" absorbs zero words, or one word and stays in place
        return _match(rest, words) or (bool(words) and _match(pattern, words[1:]))
    if not words:
        return False
    if head == SINGLE_WORD or head == words[0]:
        return _match(rest, words[1:])
    return False
