"""
Tests for custom token issuance after SMS code verification.
"""

import asyncio

import pytest

from conftest import FakeStore, FakeTokens
from custom_tokens import PREMIUM_CLAIMS, CustomTokenWatcher, codes_match, submitted_code
from errors import ValidationSkip

PHONE = "+905551112233"


def make_store(user_sms, server_sms="4242", **request_fields) -> FakeStore:
    request = dict(request_fields)
    if user_sms is not None:
        request["userSms"] = user_sms
    data = {"custom-token-status": {PHONE: request or {"requestedAt": 1}}}
    if server_sms is not None:
        data["phone-sms"] = {PHONE: {"sms": server_sms}}
    return FakeStore(data)


def run(store: FakeStore, watcher: CustomTokenWatcher, steps=None):
    async def scenario():
        await watcher.start()
        await store.settle()
        if steps:
            await steps()
            await store.settle()
        await watcher.stop(timeout=1)

    asyncio.run(scenario())


class TestSubmittedCode:
    def test_missing_code(self):
        with pytest.raises(ValidationSkip):
            submitted_code(PHONE, {"customToken": None})

    def test_empty_code(self):
        with pytest.raises(ValidationSkip):
            submitted_code(PHONE, {"userSms": ""})

    def test_numeric_code_is_stringified(self):
        assert submitted_code(PHONE, {"userSms": 1234}) == "1234"


class TestCodesMatch:
    def test_equal(self):
        assert codes_match("4242", "4242")

    def test_number_and_string(self):
        assert codes_match("1234", 1234)

    def test_different(self):
        assert not codes_match("0000", "4242")

    def test_no_server_code(self):
        assert not codes_match("4242", None)


class TestTokenIssuance:
    def test_matching_code_mints_token(self, tokens: FakeTokens):
        store = make_store("4242", "4242")

        run(store, CustomTokenWatcher(store, tokens))

        assert tokens.minted == [(PHONE, PREMIUM_CLAIMS)]
        assert store.value_at(f"custom-token-status/{PHONE}/customToken") == f"token-for-{PHONE}"

    def test_mismatched_code_writes_nothing(self, tokens: FakeTokens):
        store = make_store("0000", "4242")

        run(store, CustomTokenWatcher(store, tokens))

        assert tokens.minted == []
        assert store.value_at(f"custom-token-status/{PHONE}/customToken") is None
        assert store.writes == []

    def test_missing_code_is_skipped(self, tokens: FakeTokens):
        store = make_store(None)
        watcher = CustomTokenWatcher(store, tokens)

        run(store, watcher)

        assert tokens.minted == []
        assert store.listeners(f"phone-sms/{PHONE}") == []

    def test_empty_code_is_skipped(self, tokens: FakeTokens):
        store = make_store("", "")

        run(store, CustomTokenWatcher(store, tokens))

        assert tokens.minted == []

    def test_existing_token_is_not_replaced(self, tokens: FakeTokens):
        store = make_store("4242", "4242", customToken="issued-earlier")

        run(store, CustomTokenWatcher(store, tokens))

        assert tokens.minted == []
        assert store.value_at(f"custom-token-status/{PHONE}/customToken") == "issued-earlier"

    def test_token_written_at_most_once(self, tokens: FakeTokens):
        store = make_store("4242", "4242")
        watcher = CustomTokenWatcher(store, tokens)

        async def issue_again():
            await watcher.issue_token(PHONE)

        run(store, watcher, issue_again)

        assert len(tokens.minted) == 2
        assert store.value_at(f"custom-token-status/{PHONE}/customToken") == f"token-for-{PHONE}"

    def test_later_server_code_correction_matches(self, tokens: FakeTokens):
        store = make_store("4242", "9999")
        watcher = CustomTokenWatcher(store, tokens)

        async def correct_server_code():
            assert watcher.pending_phones == [PHONE]
            await store.set(f"phone-sms/{PHONE}/sms", "4242")

        run(store, watcher, correct_server_code)

        assert store.value_at(f"custom-token-status/{PHONE}/customToken") == f"token-for-{PHONE}"

    def test_server_code_arriving_later(self, tokens: FakeTokens):
        store = make_store("1234", server_sms=None)

        async def sms_sent():
            await store.set(f"phone-sms/{PHONE}", {"sms": "1234"})

        run(store, CustomTokenWatcher(store, tokens), sms_sent)

        assert len(tokens.minted) == 1

    def test_subscription_released_after_issue(self, tokens: FakeTokens):
        store = make_store("4242", "4242")
        watcher = CustomTokenWatcher(store, tokens)

        async def check():
            assert watcher.pending_phones == []
            assert store.listeners(f"phone-sms/{PHONE}") == []
            await store.set(f"phone-sms/{PHONE}/sms", "5555")
            await store.set(f"phone-sms/{PHONE}/sms", "4242")

        run(store, watcher, check)

        assert len(tokens.minted) == 1

    def test_signing_failure_leaves_token_unset(self):
        store = make_store("4242", "4242")
        tokens = FakeTokens(fail=True)
        watcher = CustomTokenWatcher(store, tokens)

        async def check():
            assert watcher.pending_phones == [PHONE]

        run(store, watcher, check)

        assert store.value_at(f"custom-token-status/{PHONE}/customToken") is None

    def test_request_submitted_after_start(self, tokens: FakeTokens):
        store = FakeStore({"phone-sms": {PHONE: {"sms": "4242"}}})

        async def submit():
            await store.set(f"custom-token-status/{PHONE}", {"userSms": "4242"})

        run(store, CustomTokenWatcher(store, tokens), submit)

        assert store.value_at(f"custom-token-status/{PHONE}/customToken") == f"token-for-{PHONE}"

    def test_custom_claims(self, tokens: FakeTokens):
        store = make_store("4242", "4242")

        run(store, CustomTokenWatcher(store, tokens, claims={"tier": "gold"}))

        assert tokens.minted == [(PHONE, {"tier": "gold"})]

    def test_superseded_handler_keeps_newer_subscription(self, tokens: FakeTokens):
        store = make_store("0000", "4242")
        watcher = CustomTokenWatcher(store, tokens)

        async def noop(_value):
            pass

        async def finish_stale_request():
            current = watcher._pending[PHONE]
            stale = await store.on_value("phone-sms/stale", noop)
            await watcher._on_server_code(PHONE, "4242", [stale], {"sms": "4242"})
            assert stale.closed
            assert watcher._pending[PHONE] is current
            assert not current.closed
            assert watcher.pending_phones == [PHONE]

        run(store, watcher, finish_stale_request)

        assert len(tokens.minted) == 1
