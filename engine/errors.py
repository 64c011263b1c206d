"""Exceptions raised by the combat engine and its collaborators."""


class CombatError(Exception):
    """Base exception for combat engine errors."""
    pass


class EncounterClosedError(CombatError):
    """A mutation was attempted on a completed or defeated encounter."""
    pass


class EncounterNotFoundError(CombatError):
    """No encounter document exists for the requested id."""
    pass


class PersistenceError(CombatError):
    """A write to the character or encounter store failed.

    Memory and storage may now disagree, so the turn sequence must stop
    rather than move on to the next NPC.
    """
    pass
