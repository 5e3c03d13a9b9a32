"""
sample_data.py - Generate realistic synthetic signals and account profiles
that contain coordinated-abuse patterns for demonstration and testing.

Patterns embedded:
- Multi-account ring sharing one device and cycling payments (RING_A*)
- Loose ring on a shared network with similar behavior (RING_B*)
- Payment-loop scam ring (RING_C*)
- Bot farm: ten look-alike accounts registered within two hours (BOT_*)
- Slower coordinated spam group over a day and a half (PROMO_*)
- Normal accounts with weak social / behavior links and household networks
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Optional

import numpy as np
import pandas as pd

SAMPLE_NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

_VOCABULARY = (
    "coffee hiking jazz climbing painter lawyer runner baker gamer guitar "
    "photography travel dogs cats cycling yoga chess poetry cooking gardening "
    "history movies surfing skiing reader nurse engineer student mom dad "
    "soccer tennis vinyl anime podcasts science chemistry wine beer tea "
    "fishing camping knitting sewing robots coding design theatre opera "
    "museums birds stars sailing running crosswords puzzles volunteering"
).split()

_LOCATIONS = [
    "lisbon", "madrid", "austin", "lagos", "manila", "toronto", "berlin", "lima",
    "nairobi", "osaka", "denver", "porto", "krakow", "hanoi", "quito", "oslo",
]

_BOT_BIO_TEMPLATES = [
    "Earn 500 dollars a day from home DM me for crypto signals",
    "DM me for crypto signals earn 500 dollars a day from home",
    "Earn 500 dollars a day from home, DM me for crypto signals now",
    "earn 500 dollars a day from home dm me for crypto signals",
]

_PROMO_BIO_TEMPLATES = [
    "Best deals on designer bags click the link in bio",
    "Click the link in bio for best deals on designer bags",
    "Designer bags best deals click the link in bio today",
]


def generate_sample_signals(
    n_normal_accounts: int = 60,
    seed: int = 42,
    now: Optional[datetime] = None,
) -> pd.DataFrame:
    """Generate a signal batch with embedded rings.

    Returns
    -------
    pd.DataFrame
        Columns: edge_type, user_a, user_b, strength, observed_at, metadata
    """
    rng = random.Random(seed)
    now = now or SAMPLE_NOW
    rows: list[dict] = []

    def _add(edge_type: str, a: str, b: str, strength: float, days_ago: float, **metadata) -> None:
        rows.append({
            "edge_type": edge_type,
            "user_a": a,
            "user_b": b,
            "strength": round(strength, 4),
            "observed_at": now - timedelta(days=days_ago),
            "metadata": metadata,
        })

    # ── 1. Normal background ─────────────────────────────────────────────
    normal = [f"USER_{i:04d}" for i in range(1, n_normal_accounts + 1)]
    for _ in range(n_normal_accounts * 2):
        a, b = rng.sample(normal, 2)
        kind = rng.choice(["SOCIAL", "BEHAVIOR"])
        _add(kind, a, b, rng.uniform(0.05, 0.6), rng.uniform(0, 40))
    # households: disjoint pairs on one home network
    for i in range(0, min(10, len(normal) - 1), 2):
        _add("NETWORK", normal[i], normal[i + 1], 1.0, rng.uniform(0, 10), network="home")

    # ── 2. Ring A: one device, payment loop ──────────────────────────────
    ring_a = ["RING_A01", "RING_A02", "RING_A03"]
    for i in range(len(ring_a)):
        for j in range(i + 1, len(ring_a)):
            _add("DEVICE", ring_a[i], ring_a[j], 1.0, rng.uniform(0, 3), device_id="dev-7f3a")
    _add("PAYMENT", "RING_A01", "RING_A02", 1.0, 2, amount=450.0)
    _add("PAYMENT", "RING_A02", "RING_A03", 1.0, 1, amount=440.0)

    # ── 3. Ring B: shared network + look-alike behavior, leaky ───────────
    ring_b = ["RING_B01", "RING_B02", "RING_B03", "RING_B04"]
    for i in range(len(ring_b) - 1):
        _add("NETWORK", ring_b[i], ring_b[i + 1], 1.0, rng.uniform(0, 5), network="vpn-exit-12")
    _add("BEHAVIOR", "RING_B01", "RING_B03", 0.9, 2)
    _add("DEVICE", "RING_B02", "RING_B04", 1.0, 3, device_id="dev-22d0")
    for member in ring_b:
        _add("SOCIAL", member, rng.choice(normal), rng.uniform(0.1, 0.3), rng.uniform(0, 10))

    # ── 4. Ring C: payment loop with one shared device ───────────────────
    ring_c = ["RING_C01", "RING_C02", "RING_C03", "RING_C04", "RING_C05"]
    _add("DEVICE", "RING_C01", "RING_C02", 1.0, 4, device_id="dev-91bc")
    for i in range(1, len(ring_c)):
        _add("PAYMENT", ring_c[i], ring_c[(i + 1) % len(ring_c)], 1.0, rng.uniform(0, 6), amount=1200.0)

    df = pd.DataFrame(rows)
    # Shuffle rows so patterns aren't visually obvious in the raw batch
    df = df.sample(frac=1, random_state=seed).reset_index(drop=True)
    return df


def generate_sample_accounts(
    n_normal_accounts: int = 60,
    seed: int = 42,
    now: Optional[datetime] = None,
) -> pd.DataFrame:
    """Generate account profiles with an embedded bot farm and spam group.

    Returns
    -------
    pd.DataFrame
        Columns: user_id, created_at, bio, display_name_pattern, photo_hash,
        location, age_bracket, link_domain, outbound_messages,
        inbound_replies, kyc_progress
    """
    rng = random.Random(seed)
    np_rng = np.random.RandomState(seed)
    now = now or SAMPLE_NOW
    rows: list[dict] = []

    def _add(user_id: str, created_at: datetime, bio: str, outbound: int, inbound: int,
             kyc: float, **profile) -> None:
        row = {
            "user_id": user_id,
            "created_at": created_at,
            "bio": bio,
            "display_name_pattern": "",
            "photo_hash": "",
            "location": "",
            "age_bracket": "",
            "link_domain": "",
            "outbound_messages": int(outbound),
            "inbound_replies": int(inbound),
            "kyc_progress": kyc,
        }
        row.update(profile)
        rows.append(row)

    # ── 1. Normal accounts ───────────────────────────────────────────────
    normal = [f"USER_{i:04d}" for i in range(1, n_normal_accounts + 1)]
    ring_members = [f"RING_A{i:02d}" for i in range(1, 4)] + [f"RING_B{i:02d}" for i in range(1, 5)] \
        + [f"RING_C{i:02d}" for i in range(1, 6)]
    for user_id in normal + ring_members:
        outbound = int(np_rng.poisson(15))
        _add(
            user_id,
            now - timedelta(days=rng.uniform(3, 120), minutes=rng.randint(0, 59)),
            " ".join(rng.sample(_VOCABULARY, 6)),
            outbound,
            int(outbound * rng.uniform(0.3, 0.9)),
            rng.choice([0.0, 0.5, 1.0, 1.0]),
            photo_hash=f"img-{rng.getrandbits(40):010x}",
            location=rng.choice(_LOCATIONS),
        )

    # ── 2. Bot farm: 10 accounts within 2 hours ──────────────────────────
    farm_start = now - timedelta(days=2)
    for i in range(10):
        _add(
            f"BOT_{i + 1:02d}",
            farm_start + timedelta(minutes=12 * i),
            _BOT_BIO_TEMPLATES[i % len(_BOT_BIO_TEMPLATES)],
            20,
            1 if i < 6 else 0,
            0.0,
            display_name_pattern="firstname+4digits",
            photo_hash="img-stockmodel-07",
            age_bracket="18-24",
            link_domain="quick-cash.example",
        )

    # ── 3. Coordinated spam: 4 accounts over ~36 hours ───────────────────
    promo_start = now - timedelta(days=6)
    for i in range(4):
        _add(
            f"PROMO_{i + 1:02d}",
            promo_start + timedelta(hours=12 * i),
            _PROMO_BIO_TEMPLATES[i % len(_PROMO_BIO_TEMPLATES)],
            30,
            6,
            1.0 if i == 0 else 0.0,
            link_domain="bags-outlet.example",
            location=rng.choice(_LOCATIONS),
        )

    return pd.DataFrame(rows).sort_values("user_id").reset_index(drop=True)
