"""CLI entry point for lp-airdrop."""

import click
import yaml
from dotenv import load_dotenv
from eth_account import Account
from web3 import Web3

from . import abi as contract_abi
from .dispatcher import Dispatcher
from .gas import DEFAULT_GAS_LIMIT, DEFAULT_GAS_PRICE, POLICIES, GasQueryError, make_policy
from .ledger import DEFAULT_LEDGER_PATH, Ledger
from .monitor import DEFAULT_BLOCK_RANGE, AirdropMonitor

# option name -> (config.yaml key, default)
SETTINGS = {
    "rpc_url": ("rpc_url", None),
    "private_key": ("private_key", None),
    "position_manager": ("position_manager", contract_abi.POSITION_MANAGER_ADDRESS),
    "token": ("token", None),
    "chain_id": ("chain_id", contract_abi.ARBITRUM_CHAIN_ID),
    "ledger_path": ("ledger", DEFAULT_LEDGER_PATH),
    "amount": ("amount", contract_abi.DEFAULT_REWARD_AMOUNT),
    "gas_policy": ("gas_policy", "fixed"),
    "gas_price": ("gas_price", DEFAULT_GAS_PRICE),
    "gas_limit": ("gas_limit", DEFAULT_GAS_LIMIT),
    "price_margin": ("price_margin", 1),
    "limit_buffer": ("limit_buffer", 2),
    "max_gas_price": ("max_gas_price", DEFAULT_GAS_PRICE),
    "max_attempts": ("max_attempts", 10),
    "retry_interval": ("retry_interval", 30.0),
    "poll_interval": ("poll_interval", 2.0),
}


def load_config(path: str | None) -> dict:
    if path is None:
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def resolve_settings(options: dict, cfg: dict) -> dict:
    """Command line / environment first, then config.yaml, then defaults."""
    settings = {}
    for name, (key, default) in SETTINGS.items():
        value = options.get(name)
        if value is None:
            value = cfg.get(key, default)
        settings[name] = value
    return settings


def read_private_key(raw_key: str | None) -> str | None:
    if raw_key and not raw_key.startswith("0x"):
        # Could be a hex key without prefix or a file path
        if len(raw_key) == 64 and all(c in "0123456789abcdefABCDEF" for c in raw_key):
            raw_key = "0x" + raw_key
        else:
            with open(raw_key) as f:
                raw_key = f.read().strip()
    return raw_key


def make_web3(rpc_url: str) -> Web3:
    if rpc_url.startswith("ws://") or rpc_url.startswith("wss://"):
        w3 = Web3(Web3.LegacyWebSocketProvider(rpc_url))
    else:
        w3 = Web3(Web3.HTTPProvider(rpc_url))
    if not w3.is_connected():
        raise click.ClickException(f"Cannot connect to RPC: {rpc_url}")
    return w3


@click.group()
@click.option("--rpc", "rpc_url", envvar=["RPC_URL", "ALCHEMY_API_KEY"], default=None, help="Node RPC URL (http(s) or ws(s))")
@click.option("--key", "private_key", envvar="PRIVATE_KEY", default=None, help="Private key (hex) or path to keyfile")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True), help="Path to config.yaml")
@click.option("--position-manager", envvar="UNISWAP_NFT_POSITION_MANAGER", default=None, help="NonfungiblePositionManager address")
@click.option("--token", envvar="AIRDROP_TOKEN_ADDRESS", default=None, help="Reward ERC-20 token address")
@click.option("--chain-id", envvar="CHAIN_ID", default=None, type=int, help="Chain id (default: 42161, Arbitrum One)")
@click.option("--ledger", "ledger_path", envvar="AIRDROP_LEDGER", default=None, help="Ledger file (default: airdrop_state.json)")
@click.option("--amount", envvar="AIRDROP_AMOUNT", default=None, type=int, help="Reward per recipient in smallest token units")
@click.option("--gas-policy", envvar="GAS_POLICY", default=None, type=click.Choice(sorted(POLICIES)), help="Gas policy (default: fixed)")
@click.option("--gas-price", envvar="GAS_PRICE_WEI", default=None, type=int, help="Fixed policy gas price in wei")
@click.option("--gas-limit", envvar="GAS_LIMIT", default=None, type=int, help="Gas limit for fixed and gated policies (default: 500000)")
@click.option("--price-margin", envvar="PRICE_MARGIN_PCT", default=None, type=int, help="Estimated policy: %% added to base fee (default: 1)")
@click.option("--limit-buffer", envvar="GAS_LIMIT_BUFFER_PCT", default=None, type=int, help="Estimated policy: %% added to gas estimate (default: 2)")
@click.option("--max-gas-price", envvar="MAX_GAS_PRICE_WEI", default=None, type=int, help="Gated policy: highest gas price in wei")
@click.option("--max-attempts", envvar="MAX_ATTEMPTS", default=None, type=click.IntRange(min=1), help="Gated policy: price checks per event (default: 10)")
@click.option("--retry-interval", envvar="RETRY_INTERVAL", default=None, type=float, help="Gated policy: seconds between price checks (default: 30)")
@click.option("--poll-interval", envvar="POLL_INTERVAL", default=None, type=float, help="Seconds between log polls (default: 2)")
@click.pass_context
def cli(ctx, config_path, **options):
    """LP airdrop: reward new Uniswap V3 liquidity providers once each."""
    cfg = load_config(config_path)
    ctx.ensure_object(dict)
    ctx.obj.update(resolve_settings(options, cfg))
    ctx.obj["config"] = cfg


def get_ledger(ctx) -> Ledger:
    ledger = Ledger.load(ctx.obj["ledger_path"])
    if ledger.load_error:
        click.echo(
            f"Warning: could not read {ledger.path} ({ledger.load_error}); starting with an empty ledger",
            err=True,
        )
    return ledger


def get_monitor(ctx) -> AirdropMonitor:
    obj = ctx.obj
    if not obj.get("rpc_url"):
        raise click.ClickException("RPC URL required (--rpc, RPC_URL or config rpc_url)")
    if not obj.get("private_key"):
        raise click.ClickException("Private key required (--key, PRIVATE_KEY or config private_key)")
    if not obj.get("token"):
        raise click.ClickException("Token address required (--token, AIRDROP_TOKEN_ADDRESS or config token)")

    policy = make_policy(
        obj["gas_policy"],
        gas_price=obj["gas_price"],
        gas_limit=obj["gas_limit"],
        price_margin=obj["price_margin"],
        limit_buffer=obj["limit_buffer"],
        max_gas_price=obj["max_gas_price"],
        max_attempts=obj["max_attempts"],
        retry_interval=obj["retry_interval"],
    )
    w3 = make_web3(obj["rpc_url"])
    account = Account.from_key(read_private_key(obj["private_key"]))
    position_manager = w3.eth.contract(
        address=Web3.to_checksum_address(obj["position_manager"]),
        abi=contract_abi.POSITION_MANAGER_ABI,
    )
    token = w3.eth.contract(
        address=Web3.to_checksum_address(obj["token"]),
        abi=contract_abi.ERC20_ABI,
    )
    dispatcher = Dispatcher(w3, account, token, int(obj["chain_id"]))
    return AirdropMonitor(
        w3, position_manager, dispatcher, get_ledger(ctx), policy,
        int(obj["amount"]), poll_interval=float(obj["poll_interval"]),
    )


@cli.command()
@click.option("--from-block", default=None, type=int, help="Replay events from this block (default: new blocks only)")
@click.option("--block-range", default=DEFAULT_BLOCK_RANGE, type=click.IntRange(min=1), help="Max blocks per log query (default: 2000)")
@click.option("--count", default=None, type=int, help="Stop after N events (default: run until Ctrl+C)")
@click.pass_context
def watch(ctx, from_block, block_range, count):
    """Watch IncreaseLiquidity events and airdrop to new position owners."""
    monitor = get_monitor(ctx)
    click.echo(f"Loaded airdrop ledger with {len(monitor.ledger)} previous recipients")
    click.echo(f"Account:          {monitor.dispatcher.address}")
    click.echo(f"Position manager: {monitor.position_manager.address}")
    click.echo(f"Reward token:     {monitor.dispatcher.token.address}")
    click.echo(f"Reward amount:    {monitor.amount}")
    click.echo(f"Gas policy:       {monitor.policy.name}")
    click.echo("Monitoring for new liquidity provisions... (Ctrl+C to stop)")
    monitor.run(from_block=from_block, block_range=block_range, count=count)


@cli.command()
@click.pass_context
def status(ctx):
    """Show balances, gas conditions and ledger size."""
    monitor = get_monitor(ctx)
    w3 = monitor.w3
    address = monitor.dispatcher.address
    token = monitor.dispatcher.token
    block = w3.eth.get_block("latest")

    click.echo(f"Account:             {address}")
    click.echo(f"Chain id:            {monitor.dispatcher.chain_id} (node: {w3.eth.chain_id})")
    click.echo(f"ETH balance:         {Web3.from_wei(w3.eth.get_balance(address), 'ether')} ETH")
    click.echo(f"Reward token:        {token.address} ({token.functions.symbol().call()})")
    click.echo(f"Token balance:       {token.functions.balanceOf(address).call()}")
    click.echo(f"Reward amount:       {monitor.amount}")
    click.echo(f"Gas price:           {w3.eth.gas_price} wei")
    click.echo(f"Base fee:            {block.get('baseFeePerGas')} wei")
    click.echo(f"Gas policy:          {monitor.policy.name}")
    click.echo(f"Ledger:              {monitor.ledger.path} ({len(monitor.ledger)} recipients)")


@cli.command()
@click.argument("recipient")
@click.pass_context
def quote(ctx, recipient):
    """Show what the gas policy would decide for a transfer to RECIPIENT."""
    try:
        recipient = Web3.to_checksum_address(recipient)
    except ValueError as e:
        raise click.ClickException(f"Invalid recipient address {recipient!r}: {e}")
    monitor = get_monitor(ctx)
    transfer = monitor.dispatcher.transfer(recipient, monitor.amount)
    try:
        decision = monitor.policy.decide(monitor.w3, transfer)
    except GasQueryError as e:
        raise click.ClickException(str(e))
    if monitor.ledger.has_paid(recipient):
        click.echo(f"{recipient} already received an airdrop")
    click.echo(f"Gas policy: {monitor.policy.name}")
    click.echo(f"Decision:   {decision.describe()}")
    click.echo(f"Max fee:    {Web3.from_wei(decision.price * decision.limit, 'ether')} ETH")


@cli.command()
@click.pass_context
def history(ctx):
    """List recorded airdrops."""
    ledger = get_ledger(ctx)
    if not len(ledger):
        click.echo("No airdrops recorded.")
        return
    for entry in sorted(ledger.entries, key=lambda e: e.awarded_at):
        click.echo(f"{entry.awarded_at.isoformat()}  {entry.recipient}  {entry.amount}  {entry.tx_reference}")
    click.echo(f"\n{len(ledger)} recipients")


def main():
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
