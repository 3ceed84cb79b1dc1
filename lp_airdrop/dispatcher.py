"""Build, sign and submit the reward transfer."""

from dataclasses import dataclass

from web3 import Web3

from .gas import GasDecision


class SendError(RuntimeError):
    pass


@dataclass(frozen=True)
class Transfer:
    """One token.transfer(recipient, amount) call from sender."""

    token: object
    sender: str
    recipient: str
    amount: int

    def function(self):
        return self.token.functions.transfer(
            Web3.to_checksum_address(self.recipient), self.amount,
        )

    def estimate_gas(self) -> int:
        return self.function().estimate_gas({"from": self.sender})


class Dispatcher:
    def __init__(self, w3: Web3, account, token, chain_id: int):
        self.w3 = w3
        self.account = account
        self.address = account.address
        self.token = token
        self.chain_id = chain_id

    def transfer(self, recipient: str, amount: int) -> Transfer:
        return Transfer(self.token, self.address, recipient, amount)

    def _build_tx(self, transfer: Transfer, decision: GasDecision) -> bytes:
        """Build and sign a legacy-priced transaction, return raw bytes."""
        tx = transfer.function().build_transaction({
            "from": self.address,
            "chainId": self.chain_id,
            "nonce": self.w3.eth.get_transaction_count(self.address, "pending"),
            "gas": decision.limit,
            "gasPrice": decision.price,
        })
        signed = self.account.sign_transaction(tx)
        return signed.raw_transaction

    def send(self, recipient: str, amount: int, decision: GasDecision) -> str:
        """Submit the transfer. Returns the tx hash once the node accepts it.

        Does not wait for the receipt and never retries; any rejection is
        raised as SendError.
        """
        if not decision.proceed:
            raise ValueError(f"Cannot send on a deferred decision ({decision.deferred})")
        try:
            raw = self._build_tx(self.transfer(recipient, amount), decision)
            tx_hash = self.w3.eth.send_raw_transaction(raw)
        except Exception as e:
            raise SendError(f"Transfer to {recipient} rejected: {e}") from e
        return Web3.to_hex(tx_hash)
