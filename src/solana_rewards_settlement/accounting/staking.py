"""Off-chain projection of the staking program's reward-per-token accumulator.

Fixed-point contract, identical to the deployed program:

* ``reward_per_token`` is stored scaled by ``REWARD_SCALE`` (``10**9``).
* Every division floors (integer division), so projections never exceed what
  the program will actually pay.
* The accumulator and all intermediates must fit in u128, and pending rewards
  in u64. Values outside those ranges raise :class:`ArithmeticOverflow`; they
  are never wrapped or clamped.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Optional

from ..errors import ArithmeticOverflow
from ..schemas import StakePosition, StakingPool
from ..utils.constants import U64_MAX, U128_MAX

REWARD_SCALE = 1_000_000_000


def _checked(value: int, limit: int, what: str) -> int:
    if value < 0 or value > limit:
        raise ArithmeticOverflow(f"{what} out of range: {value}")
    return value


class StakingAccountant:
    """Pure reward math over decoded pool and position accounts."""

    scale = REWARD_SCALE

    def accumulator_delta(self, pool: StakingPool, now: int) -> int:
        """Increase of ``reward_per_token`` between the pool's last update and ``now``."""

        if now <= pool.last_update_ts:
            return 0
        if pool.total_staked == 0 or pool.reward_rate == 0:
            return 0
        elapsed = now - pool.last_update_ts
        emitted = _checked(elapsed * pool.reward_rate, U128_MAX, "emitted rewards")
        scaled = _checked(emitted * REWARD_SCALE, U128_MAX, "scaled rewards")
        return scaled // pool.total_staked

    def projected_reward_per_token(self, pool: StakingPool, now: int) -> int:
        projected = pool.reward_per_token_stored + self.accumulator_delta(pool, now)
        return _checked(projected, U128_MAX, "reward_per_token")

    def accrue_pool(self, pool: StakingPool, now: int) -> StakingPool:
        """Return a copy of ``pool`` with the accumulator advanced to ``now``."""

        if now <= pool.last_update_ts:
            return replace(pool)
        return replace(
            pool,
            reward_per_token_stored=self.projected_reward_per_token(pool, now),
            last_update_ts=now,
        )

    def accrued_since_checkpoint(self, position: StakePosition, reward_per_token: int) -> int:
        if position.amount == 0 or reward_per_token <= position.reward_per_token_paid:
            return 0
        delta = reward_per_token - position.reward_per_token_paid
        product = _checked(position.amount * delta, U128_MAX, "accrued rewards")
        return product // REWARD_SCALE

    def pending_rewards(self, pool: StakingPool, position: Optional[StakePosition], now: int) -> int:
        """Rewards ``position`` could harvest at ``now``. An absent position has none."""

        if position is None:
            return 0
        reward_per_token = self.projected_reward_per_token(pool, now)
        accrued = self.accrued_since_checkpoint(position, reward_per_token)
        return _checked(position.pending_rewards + accrued, U64_MAX, "pending rewards")

    def settle_after_harvest(
        self, pool: StakingPool, position: StakePosition, now: int
    ) -> tuple[StakingPool, StakePosition, int]:
        """Mirror a harvest: returns the updated pool, position, and amount paid out."""

        updated_pool = self.accrue_pool(pool, now)
        payout = self.pending_rewards(pool, position, now)
        updated_position = replace(
            position,
            reward_per_token_paid=updated_pool.reward_per_token_stored,
            pending_rewards=0,
        )
        return updated_pool, updated_position, payout


__all__ = ["REWARD_SCALE", "StakingAccountant"]
