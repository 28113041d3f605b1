"""
iYield Oracle Consensus Engine

Threshold agreement among independent attestors on the cash-surrender value of
each policy (and of the portfolio as a whole), plus the carrier and policy
registries the vault reads from.

Consensus Model:

    attestor A ──┐
    attestor B ──┼──► pending (subject, merkle_root, value) ──► threshold ──► ConfirmedValuation
    attestor C ──┘

    - Submissions combine only on byte-exact agreement of (subject, root, value)
    - Each attestor holds at most one live submission per subject
    - Promotion happens synchronously inside the submission that reaches threshold
    - Pending submissions expire lazily after the submission window
    - Only currently active attestors count toward the threshold

Tie-break: the first tuple to reach threshold wins. A confirmation drops every
pending submission not newer than itself; tuples emptied that way are remembered
as outvoted for the round. Later submissions joining an outvoted tuple at or
before the confirmed timestamp fail with ConflictingConsensus. A competing tuple
whose contributions are newer than the confirmation stays live and may confirm.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from iyield import merkle
from iyield.access import AccessControl
from iyield.config import OracleConfig
from iyield.events import (
    AttestorAdded,
    AttestorRemoved,
    AttestorSlashed,
    CarrierUpdated,
    EventBus,
    PolicyRegistered,
    ThresholdUpdated,
    ValuationConfirmed,
    ValuationSubmitted,
)
from iyield.hardening import (
    Clock,
    ConflictingConsensus,
    DuplicateSubmission,
    IYieldError,
    InvariantChecker,
    MalformedProof,
    StaleOracleData,
    StaleSubmission,
    SystemClock,
    UnknownAttestor,
    UnknownCarrier,
    UnknownPolicy,
    ValidationError,
    Validators,
)
from iyield.observability import AuditLogger, Layer, get_logger
from iyield.signatures import Ed25519SignatureVerifier, SignatureVerifier, submission_digest


PORTFOLIO_SUBJECT = "PORTFOLIO"

MIN_CARRIER_RATING = 1
MAX_CARRIER_RATING = 1000


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass
class SlashRecord:
    reason: str
    slashed_at: int
    slashed_by: str


@dataclass
class Attestor:
    """An independent party permitted to submit valuations."""
    address: str
    public_key: Optional[bytes] = None
    active: bool = True
    added_at: int = 0
    slash: Optional[SlashRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "public_key": self.public_key.hex() if self.public_key else None,
            "active": self.active,
            "added_at": self.added_at,
            "slashed": self.slash is not None,
            "slash_reason": self.slash.reason if self.slash else None,
        }


@dataclass(frozen=True)
class ValuationSubmission:
    """One attestor's signed claim about a subject's value."""
    attestor: str
    subject: str
    value: int
    merkle_root: str
    timestamp: int
    doc_ref: str
    signature: str
    digest: str
    received_at: int

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.subject, self.merkle_root, self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attestor": self.attestor,
            "subject": self.subject,
            "value": self.value,
            "merkle_root": self.merkle_root,
            "timestamp": self.timestamp,
            "doc_ref": self.doc_ref,
            "digest": self.digest,
            "received_at": self.received_at,
        }


@dataclass(frozen=True)
class ConfirmedValuation:
    """The authoritative valuation of a subject until superseded."""
    subject: str
    value: int
    merkle_root: str
    timestamp: int
    confirmed_at: int
    round: int
    contributors: Dict[str, str]
    doc_refs: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "value": self.value,
            "merkle_root": self.merkle_root,
            "timestamp": self.timestamp,
            "confirmed_at": self.confirmed_at,
            "round": self.round,
            "contributors": dict(self.contributors),
            "doc_refs": list(self.doc_refs),
        }


@dataclass
class CarrierRating:
    carrier_id: str
    name: str
    rating: int
    last_updated: int
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carrier_id": self.carrier_id,
            "name": self.name,
            "rating": self.rating,
            "last_updated": self.last_updated,
            "active": self.active,
        }


@dataclass
class Policy:
    """
    A registered insurance policy.

    `csv_value` is zero until the first confirmed valuation for the policy id
    and afterwards changes only through confirmations.
    """
    policy_id: str
    carrier_id: str
    holder: str
    inception_timestamp: int
    csv_value: int = 0
    last_valuation_timestamp: Optional[int] = None
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "carrier_id": self.carrier_id,
            "holder": self.holder,
            "inception_timestamp": self.inception_timestamp,
            "csv_value": self.csv_value,
            "last_valuation_timestamp": self.last_valuation_timestamp,
            "active": self.active,
        }


@dataclass
class _PendingTuple:
    submissions: Dict[str, ValuationSubmission] = field(default_factory=dict)


# =============================================================================
# CONSENSUS ENGINE
# =============================================================================

class OracleConsensusEngine:
    """
    Attestor set, pending submissions, confirmations and staleness policy.

    State-changing operations are serialized under one lock and validate fully
    before mutating anything.
    """

    def __init__(
        self,
        access: AccessControl,
        verifier: Optional[SignatureVerifier] = None,
        clock: Optional[Clock] = None,
        config: Optional[OracleConfig] = None,
        bus: Optional[EventBus] = None,
        audit: Optional[AuditLogger] = None,
    ):
        config = config or OracleConfig()
        self._access = access
        self._verifier = verifier if verifier is not None else Ed25519SignatureVerifier()
        self._clock = clock or SystemClock()
        self._bus = bus or EventBus()
        self._audit = audit
        self._log = get_logger("consensus", Layer.ORACLE)

        self._min_attestors = config.min_attestors.get()
        self._submission_window = config.submission_window_seconds.get()
        self._max_oracle_stale = config.max_oracle_stale_seconds.get()
        self._max_clock_skew = config.max_clock_skew_seconds.get()

        self._attestors: Dict[str, Attestor] = {}
        self._pending: Dict[Tuple[str, str, int], _PendingTuple] = {}
        self._confirmed: Dict[str, ConfirmedValuation] = {}
        self._rounds: Dict[str, int] = {}
        # subject -> {(merkle_root, value): round that outvoted it}
        self._outvoted: Dict[str, Dict[Tuple[str, int], int]] = {}
        self._carriers: Dict[str, CarrierRating] = {}
        self._policies: Dict[str, Policy] = {}
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------

    def _reject(self, operation: str, error: IYieldError, **context: Any) -> IYieldError:
        self._log.rejected(operation, error, **context)
        return error

    def _admin(self, caller: str, action: str) -> None:
        try:
            self._access.require_admin(caller, action)
        except IYieldError as e:
            raise self._reject(action, e, caller=caller)

    def _record(self, actor: str, action: str, resource_type: str, resource_id: str, **details: Any) -> None:
        if self._audit:
            self._audit.log(actor, action, resource_type, resource_id, **details)

    def _active_count(self) -> int:
        return sum(1 for a in self._attestors.values() if a.active)

    def _prune(self, now: int) -> None:
        for key in list(self._pending):
            entry = self._pending[key]
            for attestor, sub in list(entry.submissions.items()):
                if now - sub.received_at > self._submission_window:
                    del entry.submissions[attestor]
            if not entry.submissions:
                del self._pending[key]

    def _drop_subject_pending(self, subject: str, through_timestamp: int) -> List[Tuple[str, int]]:
        """Drop submissions not newer than `through_timestamp`; return the (root, value) tuples emptied."""
        emptied = []
        for key in [k for k in self._pending if k[0] == subject]:
            entry = self._pending[key]
            for attestor, sub in list(entry.submissions.items()):
                if sub.timestamp <= through_timestamp:
                    del entry.submissions[attestor]
            if not entry.submissions:
                del self._pending[key]
                emptied.append((key[1], key[2]))
        return emptied

    def _drop_attestor_pending(self, attestor: str) -> None:
        for key in list(self._pending):
            entry = self._pending[key]
            entry.submissions.pop(attestor, None)
            if not entry.submissions:
                del self._pending[key]

    def _live_submission(self, attestor: str, subject: str) -> Optional[ValuationSubmission]:
        for key, entry in self._pending.items():
            if key[0] == subject and attestor in entry.submissions:
                return entry.submissions[attestor]
        return None

    # -------------------------------------------------------------------------
    # submissions
    # -------------------------------------------------------------------------

    def submit_valuation(
        self,
        attestor: str,
        subject: str,
        value: int,
        merkle_root: str,
        signature: str,
        timestamp: int,
        doc_ref: str = "",
    ) -> Optional[ConfirmedValuation]:
        """
        Record an attestor's valuation of `subject`.

        Returns the new ConfirmedValuation when this submission brings its tuple
        to threshold, else None.

        Raises:
            ValidationError: malformed subject, value, root or timestamp
            UnknownAttestor: inactive attestor or bad signature
            StaleSubmission: timestamp not after the subject's confirmed timestamp
            DuplicateSubmission: identical live submission from the same attestor
            ConflictingConsensus: joins a tuple outvoted by the current confirmation
        """
        op = "submit_valuation"
        with self._lock:
            now = self._clock.now()
            try:
                Validators.validate_identifier(attestor, "attestor").raise_if_invalid()
                Validators.validate_identifier(subject, "subject").raise_if_invalid()
                Validators.validate_amount(value, "value").raise_if_invalid()
                root = Validators.validate_digest(merkle_root, "merkle_root")
                root.raise_if_invalid()
                Validators.validate_timestamp(timestamp).raise_if_invalid()
                if not isinstance(doc_ref, str):
                    raise ValidationError("doc_ref", "must be a string", doc_ref)
            except ValidationError as e:
                raise self._reject(op, e, attestor=attestor, subject=subject)
            merkle_root = root.sanitized_value

            record = self._attestors.get(attestor)
            if record is None or not record.active:
                raise self._reject(op, UnknownAttestor("attestor is not active", attestor=attestor))
            digest = submission_digest(attestor, subject, value, merkle_root, timestamp, doc_ref)
            if not self._verifier.verify(digest, signature, attestor):
                raise self._reject(
                    op, UnknownAttestor("signature does not verify", attestor=attestor, digest=digest)
                )

            current = self._confirmed.get(subject)
            if current is not None and timestamp <= current.timestamp:
                outvoted_in = self._outvoted.get(subject, {}).get((merkle_root, value))
                if outvoted_in is not None:
                    raise self._reject(op, ConflictingConsensus(
                        "a competing valuation was confirmed first",
                        subject=subject, value=value, merkle_root=merkle_root, timestamp=timestamp,
                        confirmed_timestamp=current.timestamp, confirmed_round=outvoted_in,
                    ))
                raise self._reject(op, StaleSubmission(
                    "timestamp not after confirmed valuation",
                    subject=subject, timestamp=timestamp, confirmed_timestamp=current.timestamp,
                ))
            if timestamp > now + self._max_clock_skew:
                raise self._reject(op, ValidationError("timestamp", "too far in the future", timestamp))

            self._prune(now)
            key = (subject, merkle_root, value)
            previous = self._live_submission(attestor, subject)
            if previous is not None and previous.key == key:
                raise self._reject(op, DuplicateSubmission(
                    "attestor already has a live submission for this valuation",
                    attestor=attestor, subject=subject, value=value, merkle_root=merkle_root,
                ))

            entry = self._pending.get(key)
            agreeing = {
                a for a in (entry.submissions if entry else {})
                if a != attestor and a in self._attestors and self._attestors[a].active
            }
            agreeing.add(attestor)
            reaches_threshold = len(agreeing) >= self._min_attestors

            submission = ValuationSubmission(
                attestor=attestor,
                subject=subject,
                value=value,
                merkle_root=merkle_root,
                timestamp=timestamp,
                doc_ref=doc_ref,
                signature=signature,
                digest=digest,
                received_at=now,
            )

            # commit
            if previous is not None:
                old = self._pending[previous.key]
                del old.submissions[attestor]
                if not old.submissions:
                    del self._pending[previous.key]
            if entry is None:
                entry = _PendingTuple()
                self._pending[key] = entry
            entry.submissions[attestor] = submission

            confirmed = None
            previous_value = None
            if reaches_threshold:
                confirmed, previous_value = self._confirm(subject, entry, agreeing, now)

        self._log.info(
            "Valuation submitted",
            operation=op, attestor=attestor, subject=subject, value=value, agreeing=len(agreeing),
        )
        self._bus.publish(ValuationSubmitted(
            occurred_at=now,
            subject=subject,
            attestor=attestor,
            value=value,
            merkle_root=merkle_root,
            timestamp=timestamp,
            agreeing=len(agreeing),
        ))
        if confirmed is not None:
            self._bus.publish(ValuationConfirmed(
                occurred_at=now,
                subject=subject,
                value=confirmed.value,
                previous_value=previous_value,
                merkle_root=confirmed.merkle_root,
                timestamp=confirmed.timestamp,
                round=confirmed.round,
                contributors=sorted(confirmed.contributors),
            ))
        return confirmed

    def _confirm(
        self, subject: str, entry: _PendingTuple, agreeing: set, now: int
    ) -> Tuple[ConfirmedValuation, Optional[int]]:
        contributors = {a: entry.submissions[a] for a in sorted(agreeing)}
        sample = next(iter(contributors.values()))
        confirmed_ts = max(s.timestamp for s in contributors.values())

        previous = self._confirmed.get(subject)
        if previous is not None:
            InvariantChecker.check_monotonic_increase(
                f"confirmed timestamp of {subject}", previous.timestamp, confirmed_ts
            )
        round_no = self._rounds.get(subject, 0) + 1

        confirmed = ConfirmedValuation(
            subject=subject,
            value=sample.value,
            merkle_root=sample.merkle_root,
            timestamp=confirmed_ts,
            confirmed_at=now,
            round=round_no,
            contributors={a: s.digest for a, s in contributors.items()},
            doc_refs=tuple(sorted({s.doc_ref for s in contributors.values() if s.doc_ref})),
        )
        self._confirmed[subject] = confirmed
        self._rounds[subject] = round_no
        outvoted = self._drop_subject_pending(subject, confirmed_ts)
        self._outvoted[subject] = {
            k: round_no for k in outvoted if k != (confirmed.merkle_root, confirmed.value)
        }

        policy = self._policies.get(subject)
        if policy is not None:
            policy.csv_value = confirmed.value
            policy.last_valuation_timestamp = confirmed_ts

        self._log.info(
            "Valuation confirmed",
            operation="confirm", subject=subject, value=confirmed.value, round=round_no,
        )
        self._record(
            "oracle", "confirm_valuation", "valuation", subject,
            value=confirmed.value, merkle_root=confirmed.merkle_root,
            timestamp=confirmed_ts, contributors=sorted(contributors),
        )
        return confirmed, (previous.value if previous else None)

    # -------------------------------------------------------------------------
    # freshness and queries
    # -------------------------------------------------------------------------

    def is_data_fresh(self, subject: str, max_age: Optional[int] = None) -> bool:
        """True when the subject's confirmation is at most `max_age` seconds old."""
        limit = self._max_oracle_stale if max_age is None else max_age
        with self._lock:
            confirmed = self._confirmed.get(subject)
        if confirmed is None:
            return False
        return self._clock.now() - confirmed.timestamp <= limit

    def require_fresh(self, subject: str) -> ConfirmedValuation:
        with self._lock:
            confirmed = self._confirmed.get(subject)
        if confirmed is None:
            raise self._reject("require_fresh", StaleOracleData("no confirmed valuation", subject=subject))
        age = self._clock.now() - confirmed.timestamp
        if age > self._max_oracle_stale:
            raise self._reject("require_fresh", StaleOracleData(
                "confirmed valuation is stale",
                subject=subject, age=age, max_age=self._max_oracle_stale,
            ))
        return confirmed

    def get_fresh_valuation(self, subject: str) -> int:
        return self.require_fresh(subject).value

    def get_latest_valuation(self, subject: str) -> Optional[ConfirmedValuation]:
        with self._lock:
            return self._confirmed.get(subject)

    def pending_submissions(self, subject: str) -> List[ValuationSubmission]:
        with self._lock:
            self._prune(self._clock.now())
            subs = [
                s for key, entry in self._pending.items() if key[0] == subject
                for s in entry.submissions.values()
            ]
        return sorted(subs, key=lambda s: (s.received_at, s.attestor))

    def get_attestor_threshold(self) -> Tuple[int, int]:
        """(required agreeing attestors, currently active attestors)."""
        with self._lock:
            return (self._min_attestors, self._active_count())

    @property
    def max_oracle_stale(self) -> int:
        return self._max_oracle_stale

    def verify_attestation(
        self,
        subject: str,
        attestor: str,
        signature: str,
        digest: Optional[str] = None,
    ) -> bool:
        """
        Check an attestor's signature after the fact.

        Without `digest` the attestor's contribution to the current confirmation
        is used. Never raises.
        """
        if digest is None:
            with self._lock:
                confirmed = self._confirmed.get(subject)
            if confirmed is None:
                return False
            digest = confirmed.contributors.get(attestor)
            if digest is None:
                return False
        try:
            return bool(self._verifier.verify(digest, signature, attestor))
        except (ValueError, TypeError):
            return False

    def verify_inclusion(self, subject: str, leaf: str, proof: Sequence[str]) -> bool:
        """Check a dataset leaf against the subject's confirmed Merkle root."""
        with self._lock:
            confirmed = self._confirmed.get(subject)
        if confirmed is None:
            raise self._reject("verify_inclusion", StaleOracleData("no confirmed valuation", subject=subject))
        try:
            merkle.require_well_formed(proof, leaf, confirmed.merkle_root)
        except MalformedProof as e:
            raise self._reject("verify_inclusion", e, subject=subject)
        return merkle.verify(proof, leaf, confirmed.merkle_root)

    def get_attestor(self, address: str) -> Optional[Attestor]:
        with self._lock:
            return self._attestors.get(address)

    def list_attestors(self, active_only: bool = False) -> List[Attestor]:
        with self._lock:
            attestors = sorted(self._attestors.values(), key=lambda a: a.address)
        if active_only:
            attestors = [a for a in attestors if a.active]
        return attestors

    def get_carrier(self, carrier_id: str) -> Optional[CarrierRating]:
        with self._lock:
            return self._carriers.get(carrier_id)

    def get_policy(self, policy_id: str) -> Optional[Policy]:
        with self._lock:
            return self._policies.get(policy_id)

    def require_policy(self, policy_id: str) -> Policy:
        policy = self.get_policy(policy_id)
        if policy is None:
            raise UnknownPolicy("policy is not registered", policy_id=policy_id)
        return policy

    # -------------------------------------------------------------------------
    # attestor administration
    # -------------------------------------------------------------------------

    def add_attestor(self, caller: str, attestor: str, public_key: Optional[bytes] = None) -> Attestor:
        self._admin(caller, "add_attestor")
        with self._lock:
            Validators.validate_identifier(attestor, "attestor").raise_if_invalid()
            if attestor in self._attestors:
                raise self._reject("add_attestor", ValidationError("attestor", "already registered", attestor))
            if public_key is not None:
                register = getattr(self._verifier, "register_key", None)
                if register is None:
                    raise self._reject("add_attestor", ValidationError(
                        "public_key", "verifier does not accept registered keys"
                    ))
                register(attestor, public_key)
            now = self._clock.now()
            record = Attestor(address=attestor, public_key=public_key, added_at=now)
            self._attestors[attestor] = record
        self._record(caller, "add_attestor", "attestor", attestor)
        self._bus.publish(AttestorAdded(occurred_at=now, attestor=attestor))
        return record

    def remove_attestor(self, caller: str, attestor: str) -> None:
        """Remove an attestor. Its key and pending submissions stop counting; past confirmations stand."""
        self._admin(caller, "remove_attestor")
        with self._lock:
            if attestor not in self._attestors:
                raise self._reject("remove_attestor", UnknownAttestor("attestor is not registered", attestor=attestor))
            del self._attestors[attestor]
            self._drop_attestor_pending(attestor)
            unregister = getattr(self._verifier, "unregister_key", None)
            if unregister is not None:
                unregister(attestor)
            now = self._clock.now()
        self._record(caller, "remove_attestor", "attestor", attestor)
        self._bus.publish(AttestorRemoved(occurred_at=now, attestor=attestor))

    def slash_attestor(self, caller: str, attestor: str, reason: str) -> None:
        """Deactivate a misbehaving attestor and keep the record of why."""
        self._admin(caller, "slash_attestor")
        with self._lock:
            record = self._attestors.get(attestor)
            if record is None:
                raise self._reject("slash_attestor", UnknownAttestor("attestor is not registered", attestor=attestor))
            now = self._clock.now()
            record.active = False
            record.slash = SlashRecord(reason=reason, slashed_at=now, slashed_by=caller)
        self._log.warning("Attestor slashed", operation="slash_attestor", attestor=attestor, reason=reason)
        self._record(caller, "slash_attestor", "attestor", attestor, reason=reason)
        self._bus.publish(AttestorSlashed(occurred_at=now, attestor=attestor, reason=reason))

    def set_min_attestors(self, caller: str, count: int) -> None:
        self._admin(caller, "set_min_attestors")
        Validators.validate_amount(count, "min_attestors", allow_zero=False).raise_if_invalid()
        with self._lock:
            old = self._min_attestors
            self._min_attestors = count
            active = self._active_count()
            now = self._clock.now()
        self._record(caller, "set_min_attestors", "oracle", "threshold", old=old, new=count)
        self._bus.publish(ThresholdUpdated(occurred_at=now, required=count, active_total=active))

    def set_max_oracle_stale(self, caller: str, seconds: int) -> None:
        self._admin(caller, "set_max_oracle_stale")
        Validators.validate_amount(seconds, "max_oracle_stale", allow_zero=False).raise_if_invalid()
        with self._lock:
            old = self._max_oracle_stale
            self._max_oracle_stale = seconds
        self._record(caller, "set_max_oracle_stale", "oracle", "staleness", old=old, new=seconds)

    # -------------------------------------------------------------------------
    # carriers and policies
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate_rating(rating: Any) -> None:
        Validators.validate_amount(rating, "rating", max_value=MAX_CARRIER_RATING).raise_if_invalid()
        if rating < MIN_CARRIER_RATING:
            raise ValidationError("rating", f"must be at least {MIN_CARRIER_RATING}", rating)

    def add_carrier(self, caller: str, carrier_id: str, name: str, rating: int) -> CarrierRating:
        self._admin(caller, "add_carrier")
        Validators.validate_identifier(carrier_id, "carrier_id").raise_if_invalid()
        self._validate_rating(rating)
        with self._lock:
            if carrier_id in self._carriers:
                raise self._reject("add_carrier", ValidationError("carrier_id", "already registered", carrier_id))
            now = self._clock.now()
            carrier = CarrierRating(carrier_id=carrier_id, name=name, rating=rating, last_updated=now)
            self._carriers[carrier_id] = carrier
        self._record(caller, "add_carrier", "carrier", carrier_id, rating=rating)
        self._bus.publish(CarrierUpdated(occurred_at=now, carrier_id=carrier_id, rating=rating, active=True))
        return carrier

    def update_carrier_rating(self, caller: str, carrier_id: str, rating: int) -> None:
        self._admin(caller, "update_carrier_rating")
        self._validate_rating(rating)
        with self._lock:
            carrier = self._carriers.get(carrier_id)
            if carrier is None:
                raise self._reject("update_carrier_rating", UnknownCarrier("carrier is not registered", carrier_id=carrier_id))
            old = carrier.rating
            now = self._clock.now()
            carrier.rating = rating
            carrier.last_updated = now
            active = carrier.active
        self._record(caller, "update_carrier_rating", "carrier", carrier_id, old=old, new=rating)
        self._bus.publish(CarrierUpdated(occurred_at=now, carrier_id=carrier_id, rating=rating, active=active))

    def deactivate_carrier(self, caller: str, carrier_id: str) -> None:
        self._admin(caller, "deactivate_carrier")
        with self._lock:
            carrier = self._carriers.get(carrier_id)
            if carrier is None:
                raise self._reject("deactivate_carrier", UnknownCarrier("carrier is not registered", carrier_id=carrier_id))
            now = self._clock.now()
            carrier.active = False
            carrier.last_updated = now
        self._record(caller, "deactivate_carrier", "carrier", carrier_id)
        self._bus.publish(CarrierUpdated(occurred_at=now, carrier_id=carrier_id, rating=carrier.rating, active=False))

    def register_policy(
        self,
        caller: str,
        policy_id: str,
        carrier_id: str,
        holder: str,
        inception_timestamp: int,
    ) -> Policy:
        """Register a policy. Its CSV value arrives through confirmed valuations."""
        self._admin(caller, "register_policy")
        Validators.validate_identifier(policy_id, "policy_id").raise_if_invalid()
        Validators.validate_identifier(holder, "holder").raise_if_invalid()
        Validators.validate_timestamp(inception_timestamp, "inception_timestamp").raise_if_invalid()
        if policy_id == PORTFOLIO_SUBJECT:
            raise ValidationError("policy_id", "reserved subject", policy_id)
        with self._lock:
            now = self._clock.now()
            if inception_timestamp > now:
                raise self._reject(
                    "register_policy",
                    ValidationError("inception_timestamp", "cannot be in the future", inception_timestamp),
                )
            if carrier_id not in self._carriers:
                raise self._reject("register_policy", UnknownCarrier("carrier is not registered", carrier_id=carrier_id))
            if policy_id in self._policies:
                raise self._reject("register_policy", ValidationError("policy_id", "already registered", policy_id))
            policy = Policy(
                policy_id=policy_id,
                carrier_id=carrier_id,
                holder=holder,
                inception_timestamp=inception_timestamp,
            )
            confirmed = self._confirmed.get(policy_id)
            if confirmed is not None:
                policy.csv_value = confirmed.value
                policy.last_valuation_timestamp = confirmed.timestamp
            self._policies[policy_id] = policy
        self._record(caller, "register_policy", "policy", policy_id, carrier_id=carrier_id, holder=holder)
        self._bus.publish(PolicyRegistered(
            occurred_at=now, policy_id=policy_id, carrier_id=carrier_id,
            inception_timestamp=inception_timestamp,
        ))
        return policy

    def deactivate_policy(self, caller: str, policy_id: str) -> None:
        self._admin(caller, "deactivate_policy")
        with self._lock:
            policy = self._policies.get(policy_id)
            if policy is None:
                raise self._reject("deactivate_policy", UnknownPolicy("policy is not registered", policy_id=policy_id))
            policy.active = False
        self._record(caller, "deactivate_policy", "policy", policy_id)
