"""contactdedup: reconcile contact records keyed by phone number or LID."""

__version__ = "0.3.0"
