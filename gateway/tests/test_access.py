import unittest

from ticketchat.access import AccessDecision, AccessGate, InMemoryAccessCache, cache_key

from .chat_fixtures import (
    CONTRACT,
    OTHER_CONTRACT,
    FakeChain,
    FakeClock,
    HOLDER,
    ORGANIZER,
    SELLER,
    STRANGER,
    sample_event,
)


class AccessGateTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock(start_ms=0)
        self.chain = FakeChain()
        self.cache = InMemoryAccessCache(60_000, now_func=self.clock.now)
        self.gate = AccessGate(self.chain, self.cache)
        self.event = sample_event()

    async def test_organizer_is_allowed_without_chain_reads_or_caching(self):
        decision = await self.gate.check(self.event, ORGANIZER.upper().replace("0X", "0x"))

        self.assertIs(decision, AccessDecision.ALLOWED)
        self.assertEqual(self.chain.balance_calls, 0)
        self.assertEqual(len(self.cache), 0)

    async def test_holder_is_allowed_and_cached(self):
        self.chain.give_ticket(HOLDER)

        self.assertIs(await self.gate.check(self.event, HOLDER), AccessDecision.ALLOWED)
        self.assertIs(await self.gate.check(self.event, HOLDER), AccessDecision.ALLOWED)
        self.assertEqual(self.chain.balance_calls, 1)
        self.assertTrue(self.cache.get(cache_key(self.event, HOLDER)))

    async def test_holder_stays_cached_after_balance_drops(self):
        self.chain.give_ticket(HOLDER)
        self.assertIs(await self.gate.check(self.event, HOLDER), AccessDecision.ALLOWED)

        self.chain.give_ticket(HOLDER, count=0)
        self.clock.advance(59)
        self.assertIs(await self.gate.check(self.event, HOLDER), AccessDecision.ALLOWED)
        self.assertEqual(self.chain.balance_calls, 1)

        self.clock.advance(1)
        self.assertIs(await self.gate.check(self.event, HOLDER), AccessDecision.DENIED)
        self.assertEqual(self.chain.balance_calls, 2)

    async def test_active_listing_counts_as_holding(self):
        self.chain.list_ticket(SELLER)

        self.assertTrue(await self.gate.is_member(self.event, SELLER))
        self.assertEqual(self.chain.listing_calls, 1)

    async def test_inactive_or_foreign_listing_is_denied(self):
        self.chain.list_ticket(SELLER, active=False)
        self.chain.list_ticket(SELLER, contract=OTHER_CONTRACT)

        self.assertIs(await self.gate.check(self.event, SELLER), AccessDecision.DENIED)

    async def test_negative_answers_are_cached_until_ttl(self):
        self.assertIs(await self.gate.check(self.event, STRANGER), AccessDecision.DENIED)
        self.chain.give_ticket(STRANGER)

        self.clock.advance(59)
        self.assertIs(await self.gate.check(self.event, STRANGER), AccessDecision.DENIED)
        self.assertEqual(self.chain.balance_calls, 1)

        self.clock.advance(1)
        self.assertIs(await self.gate.check(self.event, STRANGER), AccessDecision.ALLOWED)
        self.assertEqual(self.chain.balance_calls, 2)

    async def test_chain_failure_is_unknown_and_not_cached(self):
        self.chain.give_ticket(HOLDER)
        self.chain.failing = True

        with self.assertLogs("ticketchat.access", level="WARNING"):
            decision = await self.gate.check(self.event, HOLDER)
        self.assertIs(decision, AccessDecision.UNKNOWN)
        self.assertFalse(decision.allowed)
        self.assertEqual(len(self.cache), 0)

        self.chain.failing = False
        self.assertIs(await self.gate.check(self.event, HOLDER), AccessDecision.ALLOWED)

    async def test_undeployed_event_is_denied_for_everyone_but_the_organizer(self):
        event = sample_event(contract_address=None)

        self.assertIs(await self.gate.check(event, HOLDER), AccessDecision.DENIED)
        self.assertIs(await self.gate.check(event, ORGANIZER), AccessDecision.ALLOWED)
        self.assertEqual(self.chain.balance_calls, 0)

    def test_cache_key_is_case_insensitive(self):
        upper = sample_event(contract_address=CONTRACT.upper().replace("0X", "0x"))
        self.assertEqual(cache_key(upper, HOLDER.upper().replace("0X", "0x")), cache_key(self.event, HOLDER))


if __name__ == "__main__":
    unittest.main()
