"""
Finalizer helpers.

Pure functions over a declaration's finalizer list. They never modify
their input; persisting the returned value is the caller's job.
"""

from typing import Iterable, Tuple


def has_finalizer(finalizers: Iterable[str], token: str) -> bool:
    """Return True if the token is present."""
    return token in tuple(finalizers)


def add_finalizer(finalizers: Iterable[str], token: str) -> Tuple[str, ...]:
    """
    Return the finalizers with the token appended.

    Adding a token that is already present returns the finalizers unchanged.
    """
    current = tuple(finalizers)
    if token in current:
        return current
    return current + (token,)


def remove_finalizer(finalizers: Iterable[str], token: str) -> Tuple[str, ...]:
    """
    Return the finalizers without the token.

    Removing an absent token returns the finalizers unchanged.
    """
    return tuple(f for f in finalizers if f != token)
