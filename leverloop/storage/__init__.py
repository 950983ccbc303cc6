from .journal import DEFAULT_OUTCOME_STREAM, OutcomeJournal

__all__ = ["DEFAULT_OUTCOME_STREAM", "OutcomeJournal"]
