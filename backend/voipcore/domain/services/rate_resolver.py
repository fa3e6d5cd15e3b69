"""
Rate Resolver
Maps a destination number to a tariff by longest-prefix match
"""
import re
import logging
from decimal import Decimal
from typing import Iterable, Optional

from voipcore.domain.interfaces.repositories import RateCardRepository
from voipcore.domain.models.billing import RateCard, Tariff

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")

# Fallback tariff used when no active rate card matches
DEFAULT_FALLBACK_TARIFF = Tariff(
    rate_per_minute=Decimal("0.15"),
    increment_seconds=6,
    connection_fee=Decimal("0"),
    destination_type="fallback",
)


class RateConfigurationError(Exception):
    """Raised when no rate card matches and no fallback tariff is configured."""
    def __init__(self, destination: str):
        self.destination = destination
        self.message = (
            f"No rate card matches {destination} and no fallback tariff is configured"
        )
        super().__init__(self.message)


def normalize_number(number: str) -> str:
    """Digits only: '+55 (11) 9999-0000' -> '5511999990000'"""
    return _NON_DIGITS.sub("", number or "")


def select_rate_card(destination: str, cards: Iterable[RateCard]) -> Optional[RateCard]:
    """
    Longest-prefix match among active cards.

    Prefixes are compared digits-only, so '+5511' and '5511' are the same prefix.
    Equal-length prefixes resolve to the first card in iteration order.
    """
    digits = normalize_number(destination)
    best: Optional[RateCard] = None
    best_length = -1

    for card in cards:
        if not card.is_active:
            continue
        prefix = normalize_number(card.prefix)
        if not prefix or not digits.startswith(prefix):
            continue
        if len(prefix) > best_length:
            best = card
            best_length = len(prefix)

    return best


class RateResolver:
    """
    Resolves the tariff for a destination.

    Reads the active rate cards on every call (once per settlement) and has
    no other side effects.
    """

    def __init__(
        self,
        repository: RateCardRepository,
        fallback: Optional[Tariff] = DEFAULT_FALLBACK_TARIFF
    ):
        self._repository = repository
        self._fallback = fallback

    async def resolve_rate(self, destination_number: str) -> Tariff:
        """
        Args:
            destination_number: Number in any format

        Returns:
            Tariff of the matching card, or the fallback tariff

        Raises:
            RateConfigurationError: No match and no fallback configured
        """
        cards = await self._repository.list_active()
        card = select_rate_card(destination_number, cards)

        if card is not None:
            logger.debug(f"Rate for {destination_number}: prefix {card.prefix} @ {card.rate_per_minute}/min")
            return Tariff.from_rate_card(card)

        if self._fallback is None:
            raise RateConfigurationError(destination_number)

        logger.info(f"No rate card for {destination_number}, using fallback tariff")
        return self._fallback
