"""Memory promotion pipeline: staged conclusions, evidence checks, and reward shaping."""

__version__ = "0.1.0"
