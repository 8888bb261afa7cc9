"""metaclaw - a long-lived personal agent with context budgeting and semantic memory."""

__version__ = "0.1.0"
