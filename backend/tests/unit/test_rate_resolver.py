"""
Unit Tests for the Rate Resolver
"""
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock

from voipcore.domain.models.billing import RateCard, Tariff
from voipcore.domain.services.rate_resolver import (
    DEFAULT_FALLBACK_TARIFF,
    RateConfigurationError,
    RateResolver,
    normalize_number,
    select_rate_card,
)


def card(prefix: str, rate: str, **kwargs) -> RateCard:
    return RateCard(prefix=prefix, rate_per_minute=Decimal(rate), **kwargs)


class TestSelectRateCard:
    """Tests for longest-prefix matching"""

    def test_longest_prefix_wins(self):
        cards = [card("+55", "0.20"), card("+5511", "0.10"), card("+551", "0.15")]

        selected = select_rate_card("+5511999990000", cards)

        assert selected.prefix == "+5511"

    def test_order_does_not_matter(self):
        cards = [card("+5511", "0.10"), card("+55", "0.20")]

        assert select_rate_card("+5521999990000", cards).prefix == "+55"
        assert select_rate_card("+5511999990000", list(reversed(cards))).prefix == "+5511"

    def test_inactive_cards_ignored(self):
        cards = [card("+55", "0.20"), card("+5511", "0.10", is_active=False)]

        assert select_rate_card("+5511999990000", cards).prefix == "+55"

    def test_formatting_is_ignored(self):
        cards = [card("5511", "0.10")]

        assert select_rate_card("+55 (11) 99999-0000", cards) is not None

    def test_no_match(self):
        assert select_rate_card("+14155550100", [card("+55", "0.20")]) is None

    def test_normalize_number(self):
        assert normalize_number("+55 (11) 9999-0000") == "551199990000"
        assert normalize_number(None) == ""


class TestRateResolver:
    """Tests for resolve_rate"""

    @pytest.mark.asyncio
    async def test_resolves_matching_card(self, store):
        resolver = RateResolver(store)

        tariff = await resolver.resolve_rate("+5511999990000")

        assert tariff.rate_per_minute == Decimal("0.10")
        assert tariff.increment_seconds == 6
        assert tariff.destination_type == "local"
        assert tariff.prefix == "+5511"

    @pytest.mark.asyncio
    async def test_fallback_when_nothing_matches(self, store):
        resolver = RateResolver(store)

        tariff = await resolver.resolve_rate("+14155550100")

        assert tariff == DEFAULT_FALLBACK_TARIFF

    @pytest.mark.asyncio
    async def test_configured_fallback(self):
        repository = AsyncMock()
        repository.list_active.return_value = []
        fallback = Tariff(rate_per_minute=Decimal("0.30"), increment_seconds=60)

        tariff = await RateResolver(repository, fallback=fallback).resolve_rate("+14155550100")

        assert tariff.rate_per_minute == Decimal("0.30")

    @pytest.mark.asyncio
    async def test_missing_fallback_is_configuration_error(self):
        repository = AsyncMock()
        repository.list_active.return_value = []

        with pytest.raises(RateConfigurationError) as exc_info:
            await RateResolver(repository, fallback=None).resolve_rate("+14155550100")

        assert exc_info.value.destination == "+14155550100"
