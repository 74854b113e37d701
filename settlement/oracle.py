"""Multi-provider price oracle with weighted-median consensus.

Two feeding modes share one validation path (:func:`validate_price_update`):

- consensus: registered providers ``submit_price`` and the backend calls
  ``aggregate``, which filters MAD outliers and takes the weighted median;
- single submitter: the holder of ``PRICE_SUBMITTER`` calls ``set_price``.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, Optional, Sequence

from settlement import events as ev
from settlement.access_control import AccessControl
from settlement.clock import ChainClock
from settlement.config import ProtocolParameters
from settlement.errors import (
    InsufficientProvidersError,
    InvalidParametersError,
    NoDataError,
    NotFoundError,
    PriceOutOfBoundsError,
    StalePriceError,
    UnauthorizedError,
)
from settlement.fixed_point import PERCENT_SCALE, deviation_pct, require_positive, require_uint, within_deviation
from settlement.state_store import (
    AggregatedPrice,
    PriceSubmission,
    ProtocolStore,
    Provider,
    ProviderStatus,
    Role,
)

logger = logging.getLogger(__name__)

MAX_PENDING_SUBMISSIONS = 64
MAX_SUBMISSION_HISTORY = 256
MAX_PROVIDER_WEIGHT = 1_000_000

DEFAULT_RELIABILITY_SCORE = 950_000
MAX_RELIABILITY_SCORE = 990_000
MIN_RELIABILITY_SCORE = 500_000
RELIABILITY_REWARD = 1_000
RELIABILITY_PENALTY = 2_000
ACCURATE_DEVIATION_PCT = 1_000
INACCURATE_DEVIATION_PCT = 10_000


@dataclass(frozen=True)
class WeightedPrice:
    """One consensus candidate: a provider's price and its effective weight."""

    provider: str
    price: int
    weight: int
    timestamp: int = 0


@dataclass(frozen=True)
class ConsensusResult:
    price: int
    timestamp: int
    contributors: tuple[WeightedPrice, ...]
    outliers: tuple[WeightedPrice, ...]


def lower_median(values: Iterable[int]) -> int:
    ordered = sorted(values)
    if not ordered:
        raise NoDataError("Median of an empty sequence.")
    return ordered[(len(ordered) - 1) // 2]


def weighted_median(entries: Sequence[WeightedPrice]) -> int:
    """Price at which cumulative weight first reaches half the total weight.

    Entries are ordered by (price, provider) so ties resolve identically on
    every evaluation.
    """
    if not entries:
        raise NoDataError("Weighted median of no entries.")
    total_weight = sum(entry.weight for entry in entries)
    if total_weight <= 0:
        raise InvalidParametersError("Weighted median requires a positive total weight.")

    cumulative = 0
    for entry in sorted(entries, key=lambda item: (item.price, item.provider)):
        cumulative += entry.weight
        if cumulative * 2 >= total_weight:
            return entry.price
    raise AssertionError("Cumulative weight never reached half of the total.")


def median_absolute_deviation(prices: Sequence[int], median: int) -> int:
    return lower_median(abs(price - median) for price in prices)


def filter_outliers(
    entries: Sequence[WeightedPrice],
    mad_multiple: int,
    min_band_pct: int,
) -> tuple[tuple[WeightedPrice, ...], tuple[WeightedPrice, ...]]:
    """Split entries into (kept, discarded) by distance from the median.

    ``mad_multiple`` is on the percent basis (3_000_000 = 3x). The MAD is
    floored at ``min_band_pct`` of the median.
    """
    if not entries:
        return (), ()
    prices = [entry.price for entry in entries]
    median = lower_median(prices)
    mad = median_absolute_deviation(prices, median)
    effective_mad = max(mad, (median * min_band_pct) // PERCENT_SCALE)

    kept: list[WeightedPrice] = []
    discarded: list[WeightedPrice] = []
    for entry in entries:
        if abs(entry.price - median) * PERCENT_SCALE > mad_multiple * effective_mad:
            discarded.append(entry)
        else:
            kept.append(entry)
    return tuple(kept), tuple(discarded)


def validate_price_update(
    previous: Optional[AggregatedPrice],
    price: int,
    timestamp: int,
    now: int,
    parameters: ProtocolParameters,
) -> None:
    """Checks every new agreed price must pass, whichever mode produced it."""
    require_positive(price, "price")
    require_uint(timestamp, "timestamp")
    if timestamp > now:
        raise InvalidParametersError(f"Price timestamp {timestamp} is in the future (now={now}).")
    if now - timestamp > parameters.max_price_age_seconds:
        raise StalePriceError(
            f"Price timestamp {timestamp} is older than {parameters.max_price_age_seconds}s."
        )
    if previous is None:
        return
    if timestamp < previous.timestamp:
        raise InvalidParametersError(
            f"Price timestamp {timestamp} precedes current timestamp {previous.timestamp}."
        )
    if not within_deviation(previous.price, price, parameters.max_deviation_pct):
        raise PriceOutOfBoundsError(
            f"Price {price} deviates {deviation_pct(previous.price, price)} from {previous.price} "
            f"(max {parameters.max_deviation_pct})."
        )


def adjust_reliability(score: int, deviation: Optional[int]) -> int:
    """Reliability feedback; ``deviation`` None marks a discarded outlier."""
    if deviation is None or deviation > INACCURATE_DEVIATION_PCT:
        return max(MIN_RELIABILITY_SCORE, score - RELIABILITY_PENALTY)
    if deviation < ACCURATE_DEVIATION_PCT:
        return min(MAX_RELIABILITY_SCORE, score + RELIABILITY_REWARD)
    return score


class PriceOracle:
    def __init__(self, store: ProtocolStore, clock: ChainClock, access: AccessControl) -> None:
        self.store = store
        self.clock = clock
        self.access = access

    def _asset(self, asset: Optional[str]) -> str:
        return asset or self.store.parameters.price_asset

    # Provider management

    def register_provider(
        self,
        caller: str,
        principal: str,
        weight: int,
        reliability_score: int = DEFAULT_RELIABILITY_SCORE,
    ) -> Provider:
        self.access.require_admin(caller)
        if not principal:
            raise InvalidParametersError("principal must be non-empty.")
        require_positive(weight, "weight")
        if weight > MAX_PROVIDER_WEIGHT:
            raise InvalidParametersError(f"weight must be <= {MAX_PROVIDER_WEIGHT}.")
        require_uint(reliability_score, "reliability_score")
        if not MIN_RELIABILITY_SCORE <= reliability_score <= PERCENT_SCALE:
            raise InvalidParametersError(
                f"reliability_score must be in [{MIN_RELIABILITY_SCORE}, {PERCENT_SCALE}]."
            )

        height = self.clock.current_height()
        with self.store.transaction("providers"):
            existing = self.store.state.providers.get(principal)
            provider = Provider(
                principal=principal,
                weight=weight,
                reliability_score=reliability_score,
                status=ProviderStatus.ACTIVE,
                submission_count=existing.submission_count if existing else 0,
                registered_at_height=existing.registered_at_height if existing else height,
            )
            self.store.state.providers[principal] = provider
            self.store.events.append(
                ev.PROVIDER_REGISTERED,
                height,
                provider=principal,
                weight=weight,
                reliability_score=reliability_score,
            )
        logger.info("Provider %s registered with weight %d.", principal, weight)
        return provider

    def disable_provider(self, caller: str, principal: str) -> Provider:
        self.access.require_admin(caller)
        self.get_provider(principal)
        with self.store.transaction("providers"):
            provider = self.store.preserve(self.store.state.providers[principal])
            provider.status = ProviderStatus.DISABLED
            self.store.events.append(ev.PROVIDER_DISABLED, self.clock.current_height(), provider=principal)
        logger.info("Provider %s disabled.", principal)
        return provider

    def set_provider_weight(self, caller: str, principal: str, weight: int) -> Provider:
        self.access.require_admin(caller)
        self.get_provider(principal)
        require_positive(weight, "weight")
        if weight > MAX_PROVIDER_WEIGHT:
            raise InvalidParametersError(f"weight must be <= {MAX_PROVIDER_WEIGHT}.")
        with self.store.transaction("providers"):
            provider = self.store.preserve(self.store.state.providers[principal])
            previous_weight = provider.weight
            provider.weight = weight
            self.store.events.append(
                ev.PROVIDER_WEIGHT_UPDATED,
                self.clock.current_height(),
                provider=principal,
                previous_weight=previous_weight,
                weight=weight,
            )
        logger.info("Provider %s weight changed from %d to %d.", principal, previous_weight, weight)
        return provider

    def get_provider(self, principal: str) -> Provider:
        provider = self.store.state.providers.get(principal)
        if provider is None:
            raise NotFoundError(f"Provider {principal} is not registered.")
        return provider

    def active_providers(self) -> tuple[Provider, ...]:
        return tuple(
            provider
            for _, provider in sorted(self.store.state.providers.items())
            if provider.status is ProviderStatus.ACTIVE
        )

    # Consensus mode

    def _is_fresh(self, submission: PriceSubmission, now: int) -> bool:
        return now - submission.timestamp <= self.store.parameters.submission_freshness_seconds

    def pending_submissions(self, asset: Optional[str] = None) -> tuple[PriceSubmission, ...]:
        """Unused submissions for ``asset`` still inside the freshness window."""
        asset = self._asset(asset)
        now = self.clock.current_time()
        return tuple(
            submission
            for submission in self.store.state.submissions
            if submission.asset == asset and not submission.used and self._is_fresh(submission, now)
        )

    def submit_price(
        self,
        provider: str,
        price: int,
        timestamp: int,
        asset: Optional[str] = None,
    ) -> PriceSubmission:
        asset = self._asset(asset)
        record = self.store.state.providers.get(provider)
        if record is None or record.status is not ProviderStatus.ACTIVE:
            logger.warning("Rejected price submission from inactive provider %s.", provider)
            raise UnauthorizedError(f"{provider} is not an active price provider.")
        require_positive(price, "price")
        require_uint(timestamp, "timestamp")
        now = self.clock.current_time()
        if timestamp > now:
            raise InvalidParametersError(f"Submission timestamp {timestamp} is in the future (now={now}).")
        if now - timestamp > self.store.parameters.submission_freshness_seconds:
            raise StalePriceError(f"Submission timestamp {timestamp} is outside the freshness window.")
        if len(self.pending_submissions(asset)) >= MAX_PENDING_SUBMISSIONS:
            raise InvalidParametersError(f"Too many pending submissions for {asset}.")

        height = self.clock.current_height()
        with self.store.transaction("submissions", "next_submission_id"):
            state = self.store.state
            self._prune_submissions(now)
            submission = PriceSubmission(
                submission_id=state.next_submission_id,
                provider=provider,
                asset=asset,
                price=price,
                timestamp=timestamp,
                submitted_at_height=height,
            )
            state.next_submission_id += 1
            state.submissions.append(submission)
            self.store.preserve(state.providers[provider]).submission_count += 1
            self.store.events.append(
                ev.PRICE_SUBMITTED,
                height,
                submission_id=submission.submission_id,
                provider=provider,
                asset=asset,
                price=price,
                timestamp=timestamp,
            )
        return submission

    def compute_consensus(self, asset: Optional[str] = None) -> ConsensusResult:
        """Run outlier filtering and the weighted median without mutating state."""
        asset = self._asset(asset)
        parameters = self.store.parameters
        latest_by_provider: dict[str, PriceSubmission] = {}
        for submission in self.pending_submissions(asset):
            provider = self.store.state.providers.get(submission.provider)
            if provider is None or provider.status is not ProviderStatus.ACTIVE:
                continue
            current = latest_by_provider.get(submission.provider)
            if current is None or (submission.timestamp, submission.submission_id) > (
                current.timestamp,
                current.submission_id,
            ):
                latest_by_provider[submission.provider] = submission

        if len(latest_by_provider) < parameters.min_providers:
            raise InsufficientProvidersError(
                f"{len(latest_by_provider)} fresh provider(s) for {asset}, "
                f"need {parameters.min_providers}."
            )

        candidates = [
            WeightedPrice(
                provider=principal,
                price=submission.price,
                weight=self.store.state.providers[principal].weight
                * self.store.state.providers[principal].reliability_score,
                timestamp=submission.timestamp,
            )
            for principal, submission in sorted(latest_by_provider.items())
        ]
        kept, discarded = filter_outliers(
            candidates,
            parameters.outlier_mad_multiple,
            parameters.min_outlier_band_pct,
        )
        if len(kept) < parameters.min_providers:
            raise InsufficientProvidersError(
                f"{len(kept)} provider(s) for {asset} left after discarding {len(discarded)} outlier(s), "
                f"need {parameters.min_providers}."
            )
        return ConsensusResult(
            price=weighted_median(kept),
            timestamp=lower_median(entry.timestamp for entry in kept),
            contributors=kept,
            outliers=discarded,
        )

    def aggregate(self, caller: str, asset: Optional[str] = None) -> AggregatedPrice:
        self.access.require_role(caller, Role.BACKEND)
        asset = self._asset(asset)
        consensus = self.compute_consensus(asset)
        now = self.clock.current_time()
        previous = self.store.state.latest_prices.get(asset)
        try:
            validate_price_update(previous, consensus.price, consensus.timestamp, now, self.store.parameters)
        except (PriceOutOfBoundsError, StalePriceError, InvalidParametersError) as exc:
            logger.warning("Aggregated price for %s rejected: %s", asset, exc)
            raise

        providers = {entry.provider for entry in consensus.contributors + consensus.outliers}
        with self.store.transaction("submissions", "providers", "latest_prices", "price_history"):
            state = self.store.state
            for submission in state.submissions:
                if (
                    submission.asset == asset
                    and not submission.used
                    and submission.provider in providers
                    and self._is_fresh(submission, now)
                ):
                    self.store.preserve(submission).used = True
            for entry in consensus.contributors:
                provider = self.store.preserve(state.providers[entry.provider])
                provider.reliability_score = adjust_reliability(
                    provider.reliability_score,
                    deviation_pct(consensus.price, entry.price),
                )
            for entry in consensus.outliers:
                provider = self.store.preserve(state.providers[entry.provider])
                provider.reliability_score = adjust_reliability(provider.reliability_score, None)
            aggregated = self._write_price(
                asset,
                consensus.price,
                consensus.timestamp,
                len(consensus.contributors),
                source="consensus",
            )
            self._prune_submissions(now)
        logger.info(
            "Aggregated %s price %d from %d provider(s), %d outlier(s) discarded.",
            asset,
            aggregated.price,
            aggregated.contributing_provider_count,
            len(consensus.outliers),
        )
        return aggregated

    def _prune_submissions(self, now: int) -> None:
        """Drop unused submissions past the freshness window and the oldest used ones over the cap."""
        submissions = self.store.state.submissions
        kept = [item for item in submissions if item.used or self._is_fresh(item, now)]
        used = [item for item in kept if item.used]
        overflow = len(used) - MAX_SUBMISSION_HISTORY
        if overflow > 0:
            evicted = {item.submission_id for item in used[:overflow]}
            kept = [item for item in kept if item.submission_id not in evicted]
        if len(kept) != len(submissions):
            logger.debug("Pruned %d price submission(s).", len(submissions) - len(kept))
            submissions[:] = kept

    # Single-submitter mode

    def set_price(
        self,
        caller: str,
        price: int,
        timestamp: int,
        asset: Optional[str] = None,
    ) -> AggregatedPrice:
        self.access.require_role(caller, Role.PRICE_SUBMITTER)
        asset = self._asset(asset)
        previous = self.store.state.latest_prices.get(asset)
        try:
            validate_price_update(previous, price, timestamp, self.clock.current_time(), self.store.parameters)
        except (PriceOutOfBoundsError, StalePriceError, InvalidParametersError) as exc:
            logger.warning("Submitted price for %s rejected: %s", asset, exc)
            raise
        with self.store.transaction("latest_prices", "price_history"):
            aggregated = self._write_price(asset, price, timestamp, 1, source="submitter")
        logger.info("Price for %s set to %d by %s.", asset, price, caller)
        return aggregated

    def _write_price(
        self,
        asset: str,
        price: int,
        timestamp: int,
        contributing_providers: int,
        source: str,
    ) -> AggregatedPrice:
        height = self.clock.current_height()
        aggregated = AggregatedPrice(
            asset=asset,
            price=price,
            timestamp=timestamp,
            contributing_provider_count=contributing_providers,
            block_height=height,
        )
        self.store.state.latest_prices[asset] = aggregated
        self.store.state.price_history_for(asset).append(aggregated)
        self.store.events.append(
            ev.PRICE_UPDATED,
            height,
            asset=asset,
            price=price,
            timestamp=timestamp,
            contributing_providers=contributing_providers,
            source=source,
        )
        return aggregated

    # Reads

    def get_latest_price(
        self,
        asset: Optional[str] = None,
        max_age_seconds: Optional[int] = None,
    ) -> AggregatedPrice:
        """Current agreed price; refuses to serve one older than ``max_age_seconds``."""
        asset = self._asset(asset)
        latest = self.store.state.latest_prices.get(asset)
        if latest is None:
            raise NoDataError(f"No price recorded for {asset}.")
        max_age = self.store.parameters.max_price_age_seconds if max_age_seconds is None else max_age_seconds
        require_uint(max_age, "max_age_seconds")
        age = self.clock.current_time() - latest.timestamp
        if age > max_age:
            raise StalePriceError(f"{asset} price is {age}s old (max {max_age}s).")
        return latest

    def get_price_history(self, asset: Optional[str] = None) -> tuple[AggregatedPrice, ...]:
        return tuple(self.store.state.price_history.get(self._asset(asset), ()))

    def get_twap(self, period_seconds: int, asset: Optional[str] = None) -> int:
        """Time-weighted average of agreed prices over the trailing period."""
        require_positive(period_seconds, "period_seconds")
        asset = self._asset(asset)
        history = self.get_price_history(asset)
        if not history:
            raise NoDataError(f"No price history for {asset}.")

        now = self.clock.current_time()
        window_start = max(0, now - period_seconds)
        weighted_sum = 0
        total_time = 0
        for index, entry in enumerate(history):
            end = history[index + 1].timestamp if index + 1 < len(history) else now
            start = max(entry.timestamp, window_start)
            if end <= start:
                continue
            weighted_sum += entry.price * (end - start)
            total_time += end - start

        if total_time == 0:
            latest = history[-1]
            if latest.timestamp < window_start:
                raise NoDataError(f"No {asset} price inside the last {period_seconds}s.")
            return latest.price
        return weighted_sum // total_time
