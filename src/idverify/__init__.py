"""
IDVERIFY - Biometric Identity Verification Decision Core

Turns a captured selfie and a captured identity-document photo into a single
pass/fail verification decision with a confidence rating, an auditable score
breakdown and a resumable session lifecycle.

The package combines a per-image quality gate, a pool of independent face
matchers, an ensemble consensus engine with an adaptive threshold, and a
session state machine backed by pluggable session and audit stores.
"""

__version__ = "1.0.0"
__author__ = "IDVERIFY Team"
__email__ = "dev@idverify.org"
