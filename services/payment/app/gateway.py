"""
Payment Service — 決済ゲートウェイのシミュレーション

実際の決済代行には接続しない。ランダムな遅延だけを再現する。
"""

import asyncio
import random
import secrets
import string
import time

_BASE36 = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_transaction_id() -> str:
    """txn_<ミリ秒の base36>_<ランダム 8 文字>"""
    random_part = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"txn_{_base36(int(time.time() * 1000))}_{random_part}"


async def simulate_gateway_call(min_ms: int = 50, max_ms: int = 100, scale: float = 1.0) -> int:
    """ゲートウェイ呼び出しを模した遅延。名目上の遅延 (ms) を返す。"""
    delay_ms = random.randint(min_ms, max_ms)
    await asyncio.sleep(delay_ms / 1000 * scale)
    return delay_ms
