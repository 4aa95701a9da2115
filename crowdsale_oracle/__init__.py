"""Crowdsale Oracle — model-based test oracle for KYC-gated token crowdsales."""

__version__ = "0.1.0"
