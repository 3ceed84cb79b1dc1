"""Gas price/limit policies for the reward transfer.

A policy looks at the chain and the transfer about to be sent and returns a
GasDecision: either proceed with (price, limit), or defer with a reason.
All prices are integer wei.
"""

from dataclasses import dataclass

from web3 import Web3


DEFAULT_GAS_LIMIT = 500_000
DEFAULT_GAS_PRICE = 100_000_000  # 0.1 gwei
PRICE_TOO_HIGH = "price_too_high"


class GasQueryError(RuntimeError):
    pass


@dataclass(frozen=True)
class GasDecision:
    price: int
    limit: int
    deferred: str | None = None

    @property
    def proceed(self) -> bool:
        return self.deferred is None

    def describe(self) -> str:
        gwei = Web3.from_wei(self.price, "gwei")
        if self.proceed:
            return f"proceed at {gwei} gwei, gas limit {self.limit}"
        return f"defer ({self.deferred}) at {gwei} gwei"


def add_percent(value: int, pct: int) -> int:
    """value + pct%, rounded down, integer only."""
    return value * (100 + pct) // 100


class GasPolicy:
    name = "base"
    # The monitor re-invokes decide() up to max_attempts times while the
    # policy defers, sleeping retry_interval seconds in between.
    max_attempts = 1
    retry_interval = 0.0

    def decide(self, w3: Web3, transfer) -> GasDecision:
        raise NotImplementedError


class FixedGasPolicy(GasPolicy):
    name = "fixed"

    def __init__(self, price: int = DEFAULT_GAS_PRICE,
                 limit: int = DEFAULT_GAS_LIMIT):
        self.price = int(price)
        self.limit = int(limit)

    def decide(self, w3: Web3, transfer) -> GasDecision:
        return GasDecision(self.price, self.limit)


class EstimatedGasPolicy(GasPolicy):
    """Latest base fee plus a margin, exact gas estimate plus a buffer."""

    name = "estimated"

    def __init__(self, price_margin_pct: int = 1, limit_buffer_pct: int = 2):
        self.price_margin_pct = int(price_margin_pct)
        self.limit_buffer_pct = int(limit_buffer_pct)

    def base_fee(self, w3: Web3) -> int:
        block = w3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            raise GasQueryError(
                f"Block {block.get('number')} has no baseFeePerGas"
            )
        return int(base_fee)

    def decide(self, w3: Web3, transfer) -> GasDecision:
        try:
            base_fee = self.base_fee(w3)
            estimate = int(transfer.estimate_gas())
        except GasQueryError:
            raise
        except Exception as e:
            raise GasQueryError(f"Gas query failed: {e}") from e
        return GasDecision(
            add_percent(base_fee, self.price_margin_pct),
            add_percent(estimate, self.limit_buffer_pct),
        )


class GatedGasPolicy(GasPolicy):
    """Send at market price only while it is at or below a ceiling."""

    name = "gated"

    def __init__(self, max_price: int, limit: int = DEFAULT_GAS_LIMIT,
                 max_attempts: int = 10, retry_interval: float = 30.0):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_price = int(max_price)
        self.limit = int(limit)
        self.max_attempts = int(max_attempts)
        self.retry_interval = float(retry_interval)

    def decide(self, w3: Web3, transfer) -> GasDecision:
        try:
            price = int(w3.eth.gas_price)
        except Exception as e:
            raise GasQueryError(f"Gas price query failed: {e}") from e
        if price <= self.max_price:
            return GasDecision(price, self.limit)
        return GasDecision(price, self.limit, deferred=PRICE_TOO_HIGH)


POLICIES = {
    FixedGasPolicy.name: FixedGasPolicy,
    EstimatedGasPolicy.name: EstimatedGasPolicy,
    GatedGasPolicy.name: GatedGasPolicy,
}


def make_policy(name: str, gas_price: int = DEFAULT_GAS_PRICE,
                gas_limit: int = DEFAULT_GAS_LIMIT, price_margin: int = 1,
                limit_buffer: int = 2, max_gas_price: int = DEFAULT_GAS_PRICE,
                max_attempts: int = 10, retry_interval: float = 30.0) -> GasPolicy:
    if name == FixedGasPolicy.name:
        return FixedGasPolicy(gas_price, gas_limit)
    if name == EstimatedGasPolicy.name:
        return EstimatedGasPolicy(price_margin, limit_buffer)
    if name == GatedGasPolicy.name:
        return GatedGasPolicy(max_gas_price, gas_limit,
                              max_attempts=max_attempts,
                              retry_interval=retry_interval)
    raise ValueError(f"Unknown gas policy {name!r} (choose from {', '.join(POLICIES)})")
