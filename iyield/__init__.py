"""
iYield: CSV Pool Core

Values a pool of insurance-policy cash-surrender-value (CSV) claims, gates every
transfer of the claims on regulatory-compliance state, and keeps the vault that
issues fungible claims against the pool solvent.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                          iYIELD CSV POOL CORE                            │
    │                                                                          │
    │  RISK                                                                    │
    │    vault.py        Positions, carrier concentration, LTV, liquidation   │
    │    token.py        Pool token ledger with gated transfers               │
    │                                                                          │
    │  ADMISSION                                                               │
    │    compliance.py   Per-account records and the transfer gate            │
    │                                                                          │
    │  VALUATION                                                               │
    │    oracle.py       Attestor threshold consensus, carriers, policies     │
    │    merkle.py       Sorted-pair Merkle roots and inclusion proofs        │
    │    signatures.py   Ed25519 submission signatures                        │
    │                                                                          │
    │  INFRASTRUCTURE                                                          │
    │    hardening.py    Error kinds, validators, clocks, invariants          │
    │    access.py       Administrative capability                            │
    │    events.py       Typed event bus                                      │
    │    observability.py Structured logging and hash-chained audit log       │
    │    config.py       YAML and environment configuration                   │
    │    system.py       Wiring of all components                             │
    │    cli.py          Operator command line                                │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Fail Closed: missing or stale valuations, expired compliance records and
    unknown accounts all deny. Boolean queries answer False instead of raising.

    All or Nothing: every state-changing call validates completely before it
    commits. A failure leaves every component exactly as it was.

    Lazy Time: expiry, lockups and staleness are evaluated against an injected
    clock at read time. Nothing runs in the background.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import iYield modules on first access."""

    if name in ("hash_leaf", "hash_pair", "merkle_root", "build_proof", "verify", "EMPTY_ROOT"):
        from iyield import merkle
        return getattr(merkle, name)

    if name in ("OracleConsensusEngine", "Attestor", "ValuationSubmission",
                "ConfirmedValuation", "CarrierRating", "Policy", "PORTFOLIO_SUBJECT"):
        from iyield import oracle
        return getattr(oracle, name)

    if name in ("ComplianceLevel", "ComplianceRecord", "ComplianceRegistry",
                "ComplianceDetails", "ComplianceStatus", "RestrictionReason",
                "RestrictionFlag", "TransferDecision", "TransferComplianceGate"):
        from iyield import compliance
        return getattr(compliance, name)

    if name in ("VaultRiskEngine", "VaultConfiguration", "VaultPosition",
                "PositionSnapshot", "PositionStatus", "LiquidationResult"):
        from iyield import vault
        return getattr(vault, name)

    if name == "CompliantToken":
        from iyield import token
        return token.CompliantToken

    if name in ("IYieldError", "ValidationError", "Clock", "SystemClock", "ManualClock"):
        from iyield import hardening
        return getattr(hardening, name)

    if name in ("IYieldConfig", "ConfigManager"):
        from iyield import config
        return getattr(config, name)

    if name == "IYieldSystem":
        from iyield import system
        return system.IYieldSystem

    raise AttributeError(f"module 'iyield' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Merkle
    "hash_leaf",
    "merkle_root",
    "build_proof",
    # Oracle
    "OracleConsensusEngine",
    "ConfirmedValuation",
    "PORTFOLIO_SUBJECT",
    # Compliance
    "ComplianceLevel",
    "ComplianceRegistry",
    "TransferComplianceGate",
    "TransferDecision",
    "RestrictionReason",
    # Vault
    "VaultRiskEngine",
    "PositionStatus",
    "LiquidationResult",
    "CompliantToken",
    # Infrastructure
    "IYieldError",
    "ManualClock",
    "IYieldConfig",
    "IYieldSystem",
]
