#!/usr/bin/env python3
"""
Lens - Live API Health Check
Verifies connectivity to Helius, Solscan, Jupiter and the result cache.

Usage:
    python -m lens.tools.health_check
"""
import asyncio
import sys

import aiohttp

from lens.config import LensConfig
from lens.core.errors import LensError
from lens.core.helius_client import HeliusClient
from lens.core.models import NATIVE_MINT
from lens.core.price_client import JupiterPriceClient
from lens.core.solscan_client import SolscanClient

# Known active wallet used for history checks
TEST_WALLET = "5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1"
# USDC, a mint Jupiter always prices
TEST_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


async def check_helius() -> bool:
    print("\n[1/4] Checking Helius API...")
    key = LensConfig.get_helius_api_key()
    if not key:
        print("❌ HELIUS_API_KEY not found in env.")
        return False

    client = HeliusClient(api_key=key)
    try:
        txs = await client.get_address_transactions(TEST_WALLET, max_pages=1)
        supply, decimals = await client.get_token_supply(TEST_MINT)
        print(f"✅ Helius connected. Fetched {len(txs)} txs; USDC supply {supply:,.0f} ({decimals} decimals).")
        return True
    except (LensError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        print(f"❌ Helius failed: {e}")
        return False
    finally:
        await client.close()


async def check_solscan() -> bool:
    print("\n[2/4] Checking Solscan API...")
    key = LensConfig.get_solscan_api_key()
    if not key:
        needed = "solscan" in (LensConfig.get_trade_source(), LensConfig.get_holder_source())
        if needed:
            print("❌ SOLSCAN_API_KEY not found but Solscan is a selected source.")
            return False
        print("⚠️  SOLSCAN_API_KEY not found. Solscan sources unavailable.")
        return True  # Not fatal

    client = SolscanClient(api_key=key)
    try:
        activities = await client.get_wallet_swaps(TEST_WALLET, max_pages=1)
        print(f"✅ Solscan connected. Fetched {len(activities)} swap activities.")
        return True
    except (LensError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        print(f"❌ Solscan failed: {e}")
        return False
    finally:
        await client.close()


async def check_jupiter() -> bool:
    print("\n[3/4] Checking Jupiter Price API (No key required)...")
    client = JupiterPriceClient()
    try:
        prices = await client.get_prices([TEST_MINT])
        if TEST_MINT in prices:
            print(f"✅ Jupiter connected. USDC = {prices[TEST_MINT]} SOL")
            return True
        print("❌ Jupiter returned no price for USDC.")
        return False
    except (LensError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        print(f"❌ Jupiter failed: {e}")
        return False
    finally:
        await client.close()


def check_cache() -> bool:
    print(f"\n[4/4] Checking result cache ({LensConfig.get_cache_backend()})...")
    store = LensConfig.build_cache_store()
    store.set("health:check", NATIVE_MINT, ttl_seconds=60)
    if store.get("health:check") != NATIVE_MINT:
        print("❌ Cache store did not return the written value.")
        return False
    store.delete("health:check")
    print("✅ Cache store read/write OK.")
    return True


async def run_checks() -> bool:
    h = await check_helius()
    s = await check_solscan()
    j = await check_jupiter()
    c = check_cache()
    return h and s and j and c


if __name__ == "__main__":
    print("=== Lens Connectivity Check ===")
    if asyncio.run(run_checks()):
        print("\n✅ All systems GO.")
        sys.exit(0)
    else:
        print("\n❌ Some systems failed checks.")
        sys.exit(1)
