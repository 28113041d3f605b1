"""
iYield System Wiring

One object owning a consistent set of components: oracle, compliance registry,
transfer gate, token ledger and vault, sharing a clock, an event bus, an audit
log and the administrative capability.

    system = IYieldSystem(admins=["ops"])
    system.oracle.add_attestor("ops", "att-1", public_key)
    system.vault.deposit("alice", ["P1"], [10_000])

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from iyield.access import AccessControl
from iyield.compliance import ComplianceRegistry, TransferComplianceGate
from iyield.config import ConfigManager, ConfigValidationError, IYieldConfig
from iyield.events import EventBus
from iyield.hardening import Clock, SystemClock
from iyield.observability import AuditLogger, Layer, get_logger
from iyield.oracle import OracleConsensusEngine
from iyield.signatures import SignatureVerifier
from iyield.token import CompliantToken
from iyield.vault import VAULT_ADDRESS, VaultRiskEngine

logger = get_logger("system", Layer.SYSTEM)


class IYieldSystem:
    """All iYield components built from one configuration."""

    def __init__(
        self,
        admins: Iterable[str],
        config: Optional[IYieldConfig] = None,
        clock: Optional[Clock] = None,
        verifier: Optional[SignatureVerifier] = None,
        bus: Optional[EventBus] = None,
        vault_address: str = VAULT_ADDRESS,
    ):
        self.config = config or IYieldConfig()
        errors = ConfigManager(self.config).validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))

        self.clock: Clock = clock or SystemClock()
        self.bus = bus or EventBus()
        self.audit = AuditLogger(clock=self.clock)
        self.access = AccessControl(admins, audit=self.audit)

        self.oracle = OracleConsensusEngine(
            access=self.access,
            verifier=verifier,
            clock=self.clock,
            config=self.config.oracle,
            bus=self.bus,
            audit=self.audit,
        )
        self.registry = ComplianceRegistry(
            access=self.access,
            clock=self.clock,
            config=self.config.compliance,
            bus=self.bus,
            audit=self.audit,
        )
        self.gate = TransferComplianceGate(
            registry=self.registry,
            access=self.access,
            blocked_jurisdictions=self.config.compliance.blocked_jurisdictions.get(),
            bus=self.bus,
            audit=self.audit,
        )
        self.token = CompliantToken(
            gate=self.gate,
            access=self.access,
            clock=self.clock,
            bus=self.bus,
            audit=self.audit,
        )
        self.vault = VaultRiskEngine(
            oracle=self.oracle,
            gate=self.gate,
            token=self.token,
            access=self.access,
            clock=self.clock,
            config=self.config.vault,
            bus=self.bus,
            audit=self.audit,
            address=vault_address,
        )
        bootstrap_admin = sorted(self.access.admins)[0]
        self.token.grant_minter(bootstrap_admin, vault_address)
        logger.info("iYield system initialized", operation="init", admins=len(self.access.admins))

    @classmethod
    def from_config_file(
        cls,
        path: Union[str, Path],
        admins: Iterable[str],
        **kwargs: Any,
    ) -> "IYieldSystem":
        manager = ConfigManager()
        manager.load_from_file(path)
        return cls(admins=admins, config=manager.config, **kwargs)

    def summary(self) -> Dict[str, Any]:
        """Point-in-time overview of the pool for operators."""
        required, active = self.oracle.get_attestor_threshold()
        return {
            "attestors": {"required": required, "active": active},
            "blocked_jurisdictions": self.gate.blocked_jurisdictions,
            "vault": self.vault.get_vault_configuration().to_dict(),
            "pool_value": self.vault.total_pool_value(),
            "tokens_outstanding": self.vault.total_tokens(),
            "token_supply": self.token.total_supply,
            "concentration": self.vault.concentration_snapshot(),
            "audit_events": len(self.audit),
        }
