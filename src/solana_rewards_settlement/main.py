"""Command line entrypoint: derive addresses and inspect staking pools."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Optional, Sequence

from solders.pubkey import Pubkey
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from .config.settings import get_app_config
from .errors import NetworkError, RewardsError, parse_optional_pubkey, parse_pubkey
from .execution.transaction_builder import create_composer
from .monitoring import bootstrap_observability
from .monitoring.logger import correlation_scope, get_logger
from .programs.addresses import AddressDeriver, ProgramIds

logger = get_logger(__name__)

RETRY_ATTEMPTS = 3
RETRY_WAIT_SECONDS = 1.0


def derive_addresses(stake_mint: Pubkey, owner: Optional[Pubkey] = None) -> Dict[str, Any]:
    config = get_app_config()
    deriver = AddressDeriver(ProgramIds.from_config(config.programs))
    return deriver.staking_addresses(stake_mint, owner).to_dict()


@retry(
    retry=retry_if_exception_type(NetworkError),
    stop=stop_after_attempt(RETRY_ATTEMPTS),
    wait=wait_fixed(RETRY_WAIT_SECONDS),
    reraise=True,
)
async def fetch_pool_snapshot(stake_mint: Pubkey, owner: Optional[Pubkey] = None) -> Dict[str, Any]:
    composer = create_composer(authority=None)
    try:
        snapshot = await composer.staking_snapshot(stake_mint, owner)
    finally:
        await composer.aclose()
    return snapshot.to_dict()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect Solana reward programs")
    subcommands = parser.add_subparsers(dest="command", required=True)

    addresses = subcommands.add_parser("addresses", help="Derive the staking PDAs for a mint (offline)")
    addresses.add_argument("stake_mint")
    addresses.add_argument("--owner", default=None, help="Also derive the owner's stake position")

    pool = subcommands.add_parser("pool", help="Fetch the staking pool and optional position")
    pool.add_argument("stake_mint")
    pool.add_argument("--owner", default=None, help="Include the owner's position and pending rewards")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    bootstrap_observability()
    with correlation_scope():
        try:
            stake_mint = parse_pubkey(args.stake_mint, "stake_mint")
            owner = parse_optional_pubkey(args.owner, "owner")
            if args.command == "addresses":
                payload = derive_addresses(stake_mint, owner)
            else:
                payload = asyncio.run(fetch_pool_snapshot(stake_mint, owner))
        except RewardsError as exc:
            logger.error("%s failed: %s", args.command, exc, extra={"kind": exc.kind})
            print(json.dumps({"error": str(exc), "kind": exc.kind}), file=sys.stderr)
            return 1
    print(json.dumps(payload, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
