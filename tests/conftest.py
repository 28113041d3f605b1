import pathlib
import sys
from typing import Dict, Iterable, Optional

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import iyield`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from iyield.compliance import ComplianceLevel  # noqa: E402
from iyield.config import IYieldConfig  # noqa: E402
from iyield.hardening import ManualClock  # noqa: E402
from iyield.merkle import hash_leaf, merkle_root  # noqa: E402
from iyield.signatures import generate_keypair, sign_submission  # noqa: E402
from iyield.system import IYieldSystem  # noqa: E402


ADMIN = "ops-admin"
START = 1_700_000_000
DAY = 24 * 60 * 60


def dataset_root(subject: str, value: int) -> str:
    """Root of a one-record valuation dataset."""
    return merkle_root([hash_leaf({"subject": subject, "value": value})])


class PoolHarness:
    """Drives a system the way attestors, compliance officers and holders would."""

    def __init__(self, system: IYieldSystem, clock: ManualClock, keys: Dict[str, object]):
        self.system = system
        self.clock = clock
        self.keys = keys

    @property
    def attestors(self):
        return sorted(self.keys)

    def submit(
        self,
        attestor: str,
        subject: str,
        value: int,
        root: Optional[str] = None,
        timestamp: Optional[int] = None,
        doc_ref: str = "",
    ):
        root = root or dataset_root(subject, value)
        ts = self.clock.now() if timestamp is None else timestamp
        signature = sign_submission(self.keys[attestor], attestor, subject, value, root, ts, doc_ref)
        return self.system.oracle.submit_valuation(attestor, subject, value, root, signature, ts, doc_ref)

    def confirm(
        self,
        subject: str,
        value: int,
        root: Optional[str] = None,
        attestors: Optional[Iterable[str]] = None,
        timestamp: Optional[int] = None,
    ):
        required, _ = self.system.oracle.get_attestor_threshold()
        signers = list(attestors) if attestors is not None else self.attestors[:required]
        result = None
        for attestor in signers:
            result = self.submit(attestor, subject, value, root=root, timestamp=timestamp)
        assert result is not None, f"valuation of {subject} did not confirm"
        return result

    def onboard(
        self,
        account: str,
        level: ComplianceLevel = ComplianceLevel.STANDARD,
        jurisdiction: str = "US",
        duration: int = 365 * DAY,
    ) -> None:
        registry = self.system.registry
        registry.set_jurisdiction(ADMIN, account, jurisdiction)
        registry.set_kyc_status(ADMIN, account, True)
        registry.set_compliant(ADMIN, account, level, duration)

    def add_carrier(self, carrier_id: str, rating: int = 800) -> None:
        self.system.oracle.add_carrier(ADMIN, carrier_id, f"{carrier_id} Life", rating)

    def add_policy(
        self,
        policy_id: str,
        carrier_id: str,
        holder: str,
        value: int,
        age: int = 400 * DAY,
    ) -> None:
        if self.system.oracle.get_carrier(carrier_id) is None:
            self.add_carrier(carrier_id)
        self.system.oracle.register_policy(ADMIN, policy_id, carrier_id, holder, self.clock.now() - age)
        self.confirm(policy_id, value)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=START)


@pytest.fixture
def attestor_keys() -> Dict[str, object]:
    keys = {}
    for i in range(1, 5):
        private_key, _ = generate_keypair()
        keys[f"att-{i}"] = private_key
    return keys


@pytest.fixture
def config() -> IYieldConfig:
    cfg = IYieldConfig()
    # Concentration is exercised explicitly where it matters.
    cfg.vault.concentration_floor.set(10 ** 12)
    return cfg


@pytest.fixture
def system(clock, attestor_keys, config) -> IYieldSystem:
    sys_ = IYieldSystem(admins=[ADMIN], config=config, clock=clock)
    for address, private_key in sorted(attestor_keys.items()):
        public_key = private_key.public_key().public_bytes_raw()
        sys_.oracle.add_attestor(ADMIN, address, public_key)
    return sys_


@pytest.fixture
def pool(system, clock, attestor_keys) -> PoolHarness:
    return PoolHarness(system, clock, attestor_keys)
