"""IncreaseLiquidity watcher and the resolve -> dedup -> price -> send loop."""

import time
from collections import Counter
from enum import Enum

from web3 import Web3

from .dispatcher import Dispatcher, SendError, Transfer
from .gas import GasDecision, GasPolicy, GasQueryError
from .ledger import Ledger, LedgerPersistError


DEFAULT_BLOCK_RANGE = 2000


class Outcome(str, Enum):
    SENT = "sent"
    ALREADY_PAID = "already_paid"
    UNRESOLVED = "unresolved"
    ABANDONED = "abandoned"
    FAILED = "failed"


class AirdropMonitor:
    """Processes IncreaseLiquidity events one at a time, in delivery order."""

    def __init__(self, w3: Web3, position_manager, dispatcher: Dispatcher,
                 ledger: Ledger, policy: GasPolicy, amount: int,
                 poll_interval: float = 2.0):
        self.w3 = w3
        self.position_manager = position_manager
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.policy = policy
        self.amount = amount
        self.poll_interval = poll_interval
        self.stats: Counter = Counter()

    def resolve_owner(self, token_id: int) -> str:
        owner = self.position_manager.functions.ownerOf(token_id).call()
        return Web3.to_checksum_address(owner)

    def price(self, transfer: Transfer) -> GasDecision | None:
        """Ask the policy until it proceeds. None once attempts run out."""
        attempts = self.policy.max_attempts
        for attempt in range(1, attempts + 1):
            decision = self.policy.decide(self.w3, transfer)
            if decision.proceed:
                return decision
            click_echo(f"  Attempt {attempt}/{attempts}: {decision.describe()}")
            if attempt < attempts:
                time.sleep(self.policy.retry_interval)
        return None

    def handle(self, event) -> Outcome:
        outcome = self._handle(event)
        self.stats[outcome] += 1
        return outcome

    def _handle(self, event) -> Outcome:
        args = event["args"]
        token_id = args["tokenId"]
        click_echo(f"New liquidity added! Token ID: {token_id} | Liquidity: {args['liquidity']}")

        try:
            owner = self.resolve_owner(token_id)
        except Exception as e:
            click_echo(f"  Failed to get position owner: {e}")
            return Outcome.UNRESOLVED
        click_echo(f"  Position owner: {owner}")

        if self.ledger.has_paid(owner):
            click_echo(f"  {owner} already received an airdrop, skipping")
            return Outcome.ALREADY_PAID

        transfer = self.dispatcher.transfer(owner, self.amount)
        try:
            decision = self.price(transfer)
        except GasQueryError as e:
            click_echo(f"  Gas policy failed: {e}")
            return Outcome.FAILED
        if decision is None:
            click_echo(f"  Gas stayed above ceiling after {self.policy.max_attempts} attempts, abandoning")
            return Outcome.ABANDONED
        click_echo(f"  Gas: {decision.describe()}")

        try:
            tx_hash = self.dispatcher.send(owner, self.amount, decision)
        except SendError as e:
            click_echo(f"  Failed to send airdrop: {e}")
            click_echo("  Make sure the wallet holds enough ETH for gas and enough reward tokens")
            return Outcome.FAILED
        click_echo(f"  Airdrop sent to {owner}! Transaction: {tx_hash}")

        try:
            self.ledger.record(owner, self.amount, tx_hash)
        except LedgerPersistError as e:
            click_echo(f"  Warning: {e}. {owner} stays marked as paid until restart.", err=True)
        return Outcome.SENT

    def fetch_events(self, from_block: int, to_block: int) -> list:
        return self.position_manager.events.IncreaseLiquidity().get_logs(
            from_block=from_block, to_block=to_block,
        )

    def run(self, from_block: int | None = None,
            block_range: int = DEFAULT_BLOCK_RANGE,
            count: int | None = None) -> Counter:
        """Poll for events forever, or until count events have been handled.

        Starts after the current head unless from_block is given.
        """
        next_block = self.w3.eth.block_number + 1 if from_block is None else from_block
        handled = 0
        try:
            while count is None or handled < count:
                latest = self.w3.eth.block_number
                if latest < next_block:
                    time.sleep(self.poll_interval)
                    continue
                to_block = min(latest, next_block + block_range - 1)
                for event in self.fetch_events(next_block, to_block):
                    self.handle(event)
                    handled += 1
                    if count is not None and handled >= count:
                        break
                next_block = to_block + 1
        except KeyboardInterrupt:
            pass

        click_echo(f"\n{'='*60}")
        click_echo("SUMMARY")
        click_echo(f"  Events handled:     {handled}")
        for outcome in Outcome:
            click_echo(f"  {outcome.value + ':':<20}{self.stats[outcome]}")
        click_echo(f"  Ledger recipients:  {len(self.ledger)}")
        click_echo(f"{'='*60}")
        return self.stats


def click_echo(msg: str, err: bool = False):
    import click
    click.echo(msg, err=err)
