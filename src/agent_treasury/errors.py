"""
Agent treasury error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (retry, abort, surface, etc.).
"""


class TreasuryError(Exception):
    """Base error for all treasury operations."""
    pass


class EncodingError(TreasuryError):
    """Malformed signature, commitment or amount input. Never retried."""
    pass


class ConfigError(TreasuryError):
    """Persisted configuration is missing or invalid."""
    pass


class KeyAccessError(TreasuryError):
    """Cannot obtain signing key material from the key-custody backend."""
    pass


# Aggregation errors
class AggregationError(TreasuryError):
    """Base error for signature collection failures."""
    pass


class UnknownCommitment(AggregationError):
    """Asked to confirm a commitment with no prior proposal."""
    def __init__(self, commitment: str):
        self.commitment = commitment
        super().__init__(f"No pending proposal for commitment {commitment}")


class ThresholdNotMetError(AggregationError):
    """Proposal does not carry enough distinct signatures to execute."""
    def __init__(self, commitment: str, have: int, need: int):
        self.commitment = commitment
        self.have = have
        self.need = need
        super().__init__(f"Proposal {commitment} has {have} of {need} required signatures")


class StaleProposalError(AggregationError):
    """Proposal nonce is behind the account nonce; it can never execute."""
    def __init__(self, commitment: str, proposal_nonce: int, account_nonce: int):
        self.commitment = commitment
        self.proposal_nonce = proposal_nonce
        self.account_nonce = account_nonce
        super().__init__(
            f"Proposal {commitment} uses nonce {proposal_nonce} but account nonce is {account_nonce}"
        )


# Execution errors
class ExecutionError(TreasuryError):
    """Base error for on-chain execution failures."""
    pass


class StepRejected(ExecutionError):
    """The ledger reverted a submitted transaction. Final for this attempt."""
    def __init__(self, step: str, tx_hash: str | None = None, reason: str = "reverted"):
        self.step = step
        self.tx_hash = tx_hash
        self.reason = reason
        suffix = f" (tx {tx_hash})" if tx_hash else ""
        super().__init__(f"{step} {reason}{suffix}")


class StaleRead(ExecutionError):
    """Read path kept returning pre-write state after all retry attempts."""
    def __init__(self, what: str, attempts: int):
        self.what = what
        self.attempts = attempts
        super().__init__(f"Stale read of {what} after {attempts} attempts")


class ThresholdTooHighError(ExecutionError):
    """Single-signer setup requested on an account whose threshold is above 1."""
    def __init__(self, threshold: int):
        self.threshold = threshold
        super().__init__(
            f"Threshold is {threshold}; single-signer setup requires threshold 1. "
            "Use the proposal flow for multi-signer accounts."
        )


class NotAnOwnerError(ExecutionError):
    """Signing identity is not an owner of the account."""
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"{address} is not an owner of the account")


class DeploymentError(ExecutionError):
    """A Safe deployment did not produce the account that was requested."""
    pass


# Policy errors
class PolicyDenied(TreasuryError):
    """Base error for local allowance policy denials. Never retried or bypassed."""
    pass


class InsufficientAllowanceError(PolicyDenied):
    """Requested pull exceeds the remaining allowance for this period."""
    def __init__(self, requested: int, remaining: int):
        self.requested = requested
        self.remaining = remaining
        super().__init__(f"Requested {requested} exceeds remaining allowance {remaining}")


class NotADelegateError(PolicyDenied):
    """Identity is absent from the registered delegate set."""
    def __init__(self, delegate: str):
        self.delegate = delegate
        super().__init__(f"{delegate} is not a registered delegate")


# Collaborator errors
class LedgerError(TreasuryError):
    """Ledger node unreachable or returned malformed data."""
    pass


class RelayError(TreasuryError):
    """Off-chain relay rejected or failed a request."""
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"Relay error ({status_code}): {message}")
