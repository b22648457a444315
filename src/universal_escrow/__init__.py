"""Universal Escrow - conditional custody for earnest money, deposits, milestones and trades."""

__version__ = "0.1.0"
