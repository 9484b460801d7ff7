"""Tests for EscrowProgram and the versioned AccountStore underneath it."""

import threading

import pytest

from strongbox.account_store import (
    AccountStore,
    ConcurrentModification,
    InMemoryTokenLedger,
    InsufficientFundsError,
)
from strongbox.accounts import TokenWhitelist, Vault
from strongbox.config import StrongboxConfig
from strongbox.constants import (
    CLAIM_INSTRUCTION,
    HIDE_INSTRUCTION,
    MIN_DEPOSIT,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    U64_MAX,
    WHITELIST_INSTRUCTION,
    Tier,
)
from strongbox.program import (
    AlreadyClaimed,
    AlreadyInitialized,
    ArithmeticOverflow,
    EscrowProgram,
    InsufficientBalance,
    InsufficientDeposit,
    NotInitialized,
    RecordAlreadyExists,
    RecordNotFound,
    TokenAlreadyWhitelisted,
    Unauthorized,
)

T1 = 1_700_000_100
T2 = 1_700_000_200


# ---------------------------------------------------------------------------
# AccountStore
# ---------------------------------------------------------------------------


class TestAccountStore:
    def test_commit_applies_all_writes(self) -> None:
        store = AccountStore()
        tx = store.begin()
        tx.write("a", b"1")
        tx.write("b", b"2")
        assert store.get("a") is None
        tx.commit()
        assert store.snapshot() == {"a": b"1", "b": b"2"}
        assert store.read("a") == (b"1", 1)

    def test_conflicting_commit_is_rejected(self) -> None:
        store = AccountStore()
        first, second = store.begin(), store.begin()
        first.read("row")
        second.read("row")
        first.write("row", b"first")
        second.write("row", b"second")
        first.commit()
        with pytest.raises(ConcurrentModification):
            second.commit()
        assert store.get("row") == b"first"

    def test_read_sees_own_staged_write(self) -> None:
        store = AccountStore()
        tx = store.begin()
        tx.write("row", b"staged")
        assert tx.read("row") == b"staged"

    def test_double_commit_raises(self) -> None:
        tx = AccountStore().begin()
        tx.commit()
        with pytest.raises(RuntimeError):
            tx.commit()


class TestTokenLedger:
    def test_transfer_moves_balance(self, make_address) -> None:
        store = AccountStore()
        ledger = InMemoryTokenLedger(store, make_address())
        alice, bob = make_address(), make_address()
        ledger.mint_to(alice, 100)
        tx = store.begin()
        ledger.transfer(tx, alice, bob, 40)
        tx.commit()
        assert ledger.balance(alice) == 60
        assert ledger.balance(bob) == 40

    def test_transfer_insufficient(self, make_address) -> None:
        store = AccountStore()
        ledger = InMemoryTokenLedger(store, make_address())
        alice = make_address()
        ledger.mint_to(alice, 10)
        with pytest.raises(InsufficientFundsError) as exc_info:
            ledger.transfer(store.begin(), alice, make_address(), 11)
        assert exc_info.value.balance == 10
        assert exc_info.value.requested == 11


# ---------------------------------------------------------------------------
# initialize / update_vault
# ---------------------------------------------------------------------------


class TestInitialize:
    def test_creates_empty_vault(self, program, authority) -> None:
        vault = program.get_vault()
        assert vault is not None
        assert vault.authority == authority
        assert vault.total_hidden == 0
        assert vault.total_claimed == 0

    def test_second_initialize_fails(self, program, make_address) -> None:
        with pytest.raises(AlreadyInitialized) as exc_info:
            program.initialize(make_address())
        assert exc_info.value.code == 6004

    def test_hide_before_initialize(self, accounts, tokens, funded_player) -> None:
        prog = EscrowProgram(accounts, tokens)
        player = funded_player()
        before = accounts.snapshot()
        with pytest.raises(NotInitialized):
            prog.hide(player, MIN_DEPOSIT, T1)
        assert accounts.snapshot() == before


class TestUpdateVault:
    def test_authority_can_hand_over(self, program, authority, make_address) -> None:
        successor = make_address()
        program.update_vault(authority, successor)
        assert program.get_vault().authority == successor

    def test_other_caller_rejected(self, program, make_address) -> None:
        with pytest.raises(Unauthorized):
            program.update_vault(make_address(), make_address())


# ---------------------------------------------------------------------------
# hide
# ---------------------------------------------------------------------------


class TestHide:
    def test_creates_record_and_moves_tokens(self, program, tokens, player) -> None:
        start = tokens.balance(player)
        receipt = program.hide(player, 500_000_000, T1)

        address = program.record_address(player, T1)
        record = program.get_record(address)
        assert record.player == player
        assert record.amount == 500_000_000
        assert record.identifier == T1
        assert record.claimed is False
        assert record.tier == Tier.COMMON

        assert program.get_vault().total_hidden == 500_000_000
        assert tokens.balance(player) == start - 500_000_000
        assert tokens.balance(program.vault_address) == 500_000_000

        assert receipt.instruction == HIDE_INSTRUCTION
        assert receipt.accounts[0] == player
        assert receipt.accounts[3] == program.vault_address
        assert receipt.accounts[4] == address
        assert receipt.accounts[5:] == (TOKEN_PROGRAM_ID, SYSTEM_PROGRAM_ID)
        assert address in receipt.account_data

    def test_records_and_total_grow_per_hide(self, program, player) -> None:
        for i in range(3):
            program.hide(player, MIN_DEPOSIT, T1 + i)
        assert len(program.records()) == 3
        assert program.get_vault().total_hidden == 3 * MIN_DEPOSIT

    def test_below_minimum_leaves_state_unchanged(self, program, accounts, player) -> None:
        before = accounts.snapshot()
        with pytest.raises(InsufficientDeposit) as exc_info:
            program.hide(player, 50_000_000, T2)
        assert exc_info.value.code == 6000
        assert accounts.snapshot() == before
        assert program.records() == {}

    def test_insufficient_balance_leaves_state_unchanged(self, program, accounts, funded_player) -> None:
        poor = funded_player(MIN_DEPOSIT - 1)
        before = accounts.snapshot()
        with pytest.raises(InsufficientBalance):
            program.hide(poor, MIN_DEPOSIT, T1)
        assert accounts.snapshot() == before

    def test_reused_identifier_collides(self, program, accounts, player) -> None:
        program.hide(player, MIN_DEPOSIT, T1)
        before = accounts.snapshot()
        with pytest.raises(RecordAlreadyExists):
            program.hide(player, MIN_DEPOSIT, T1)
        assert accounts.snapshot() == before

    def test_same_identifier_different_players(self, program, funded_player) -> None:
        a, b = funded_player(), funded_player()
        program.hide(a, MIN_DEPOSIT, T1)
        program.hide(b, MIN_DEPOSIT, T1)
        assert len(program.records()) == 2

    def test_tier_written_from_amount(self, program, funded_player) -> None:
        whale = funded_player(200_000 * 10**6)
        program.hide(whale, 150_000 * 10**6, T1)
        assert program.get_record(program.record_address(whale, T1)).tier == Tier.LEGENDARY

    def test_total_overflow(self, program, accounts, authority, player) -> None:
        tx = accounts.begin()
        tx.write(program.vault_address, Vault(authority=authority, total_hidden=U64_MAX - 1).to_bytes())
        tx.commit()
        before = accounts.snapshot()
        with pytest.raises(ArithmeticOverflow):
            program.hide(player, MIN_DEPOSIT, T1)
        assert accounts.snapshot() == before

    def test_amount_out_of_range(self, program, player) -> None:
        with pytest.raises(ValueError):
            program.hide(player, -1, T1)

    def test_concurrent_hides_serialize_on_vault(self, program, funded_player) -> None:
        players = [funded_player() for _ in range(8)]
        errors: list[Exception] = []

        def worker(p: str) -> None:
            try:
                for i in range(3):
                    program.hide(p, MIN_DEPOSIT, T1 + i)
            except Exception as e:  # surfaced via the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(p,)) for p in players]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(program.records()) == 24
        assert program.get_vault().total_hidden == 24 * MIN_DEPOSIT


# ---------------------------------------------------------------------------
# claim
# ---------------------------------------------------------------------------


class TestClaim:
    def test_marks_claimed(self, program, player) -> None:
        program.hide(player, 500_000_000, T1)
        address = program.record_address(player, T1)
        receipt = program.claim(player, address)

        assert program.get_record(address).claimed is True
        assert program.get_vault().total_claimed == 500_000_000
        assert receipt.instruction == CLAIM_INSTRUCTION
        assert receipt.accounts == (player, address, program.vault_address)

    def test_claim_does_not_release_tokens(self, program, tokens, player) -> None:
        program.hide(player, MIN_DEPOSIT, T1)
        balance = tokens.balance(player)
        program.claim(player, program.record_address(player, T1))
        assert tokens.balance(player) == balance
        assert tokens.balance(program.vault_address) == MIN_DEPOSIT

    def test_claim_twice(self, program, accounts, player) -> None:
        program.hide(player, MIN_DEPOSIT, T1)
        address = program.record_address(player, T1)
        program.claim(player, address)
        before = accounts.snapshot()
        with pytest.raises(AlreadyClaimed) as exc_info:
            program.claim(player, address)
        assert exc_info.value.code == 6001
        assert accounts.snapshot() == before
        assert program.get_vault().total_claimed == MIN_DEPOSIT

    def test_claim_by_other_player(self, program, player, funded_player) -> None:
        program.hide(player, MIN_DEPOSIT, T1)
        with pytest.raises(Unauthorized):
            program.claim(funded_player(), program.record_address(player, T1))

    def test_claim_unknown_record(self, program, player, make_address) -> None:
        with pytest.raises(RecordNotFound):
            program.claim(player, make_address())

    def test_claim_vault_address_is_not_a_record(self, program, player) -> None:
        with pytest.raises(RecordNotFound):
            program.claim(player, program.vault_address)


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------


class TestReceipts:
    def test_signatures_unique_and_slots_increase(self, program, player) -> None:
        r1 = program.hide(player, MIN_DEPOSIT, T1)
        r2 = program.hide(player, MIN_DEPOSIT, T2)
        assert r1.signature != r2.signature
        assert r2.slot == r1.slot + 1
        assert r1.block_time == 1_700_000_000

    def test_concurrent_receipts_get_distinct_signatures(self, program, authority) -> None:
        signatures: list[str] = []
        lock = threading.Lock()

        def worker() -> None:
            for _ in range(5):
                receipt = program.update_vault(authority, authority)
                with lock:
                    signatures.append(receipt.signature)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(signatures) == 40
        assert len(set(signatures)) == 40


# ---------------------------------------------------------------------------
# whitelist_token
# ---------------------------------------------------------------------------


class TestWhitelistToken:
    def test_authority_whitelists_mint(self, program, authority, mint) -> None:
        assert program.is_whitelisted(mint) is False
        receipt = program.whitelist_token(authority, mint)

        entry = program.get_whitelist(mint)
        assert entry == TokenWhitelist(token_mint=mint, enabled=True, bump=entry.bump)
        assert program.is_whitelisted(mint) is True
        assert receipt.instruction == WHITELIST_INSTRUCTION
        assert receipt.accounts[1] == mint

    def test_other_caller_rejected(self, program, accounts, mint, make_address) -> None:
        before = accounts.snapshot()
        with pytest.raises(Unauthorized):
            program.whitelist_token(make_address(), mint)
        assert accounts.snapshot() == before
        assert program.is_whitelisted(mint) is False

    def test_second_whitelist_fails(self, program, authority, mint) -> None:
        program.whitelist_token(authority, mint)
        with pytest.raises(TokenAlreadyWhitelisted) as exc_info:
            program.whitelist_token(authority, mint)
        assert exc_info.value.code == 6009

    def test_requires_initialized_vault(self, accounts, tokens, authority, mint) -> None:
        with pytest.raises(NotInitialized):
            EscrowProgram(accounts, tokens).whitelist_token(authority, mint)

    def test_entries_are_per_mint(self, program, authority, mint, make_address) -> None:
        program.whitelist_token(authority, mint)
        assert program.is_whitelisted(make_address()) is False
        assert program.records() == {}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestFromConfig:
    def test_minimum_comes_from_config(self, accounts, tokens, authority, funded_player) -> None:
        config = StrongboxConfig(min_deposit=250_500_000)
        prog = EscrowProgram.from_config(accounts, tokens, config)
        prog.initialize(authority)
        player = funded_player()

        with pytest.raises(InsufficientDeposit, match=r"minimum 250\.5 tokens"):
            prog.hide(player, 250_000_000, T1)
        prog.hide(player, 250_500_000, T1)
        assert prog.get_vault().total_hidden == 250_500_000

    def test_default_minimum_message(self, program, player) -> None:
        with pytest.raises(InsufficientDeposit, match=r"minimum 100 tokens"):
            program.hide(player, MIN_DEPOSIT - 1, T1)

    def test_from_env_minimum(self, accounts, tokens) -> None:
        config = StrongboxConfig.from_env({"STRONGBOX_MIN_DEPOSIT": "5000000"})
        assert EscrowProgram.from_config(accounts, tokens, config).min_deposit == 5_000_000
