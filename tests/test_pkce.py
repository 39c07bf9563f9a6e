"""Tests for PKCE and state helpers."""

from __future__ import annotations

import pytest

from banksync.auth.pkce import (
    VERIFIER_ALPHABET,
    create_challenge,
    create_state,
    create_verifier,
    new_session,
    states_match,
)


class TestVerifier:
    def test_default_length_and_alphabet(self) -> None:
        verifier = create_verifier()
        assert len(verifier) == 64
        assert set(verifier) <= set(VERIFIER_ALPHABET)

    @pytest.mark.parametrize("length", [43, 128])
    def test_boundary_lengths(self, length: int) -> None:
        assert len(create_verifier(length)) == length

    @pytest.mark.parametrize("length", [42, 129])
    def test_out_of_range_length(self, length: int) -> None:
        with pytest.raises(ValueError):
            create_verifier(length)

    def test_verifiers_are_unique(self) -> None:
        assert len({create_verifier() for _ in range(50)}) == 50


class TestChallenge:
    def test_rfc7636_example(self) -> None:
        # Appendix B of RFC 7636
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert create_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_no_padding(self) -> None:
        assert "=" not in create_challenge(create_verifier())


class TestState:
    def test_state_is_random(self) -> None:
        assert create_state() != create_state()

    def test_states_match(self) -> None:
        assert states_match("abc", "abc")
        assert not states_match("abc", "abd")
        assert not states_match("abc", None)
        assert not states_match("", "")


class TestSession:
    def test_new_session(self) -> None:
        session = new_session("http://localhost:8765/callback", "mock")
        assert session.redirect_uri == "http://localhost:8765/callback"
        assert session.provider_id == "mock"
        assert session.code_challenge == create_challenge(session.code_verifier)

    def test_distinct_verifiers_distinct_challenges(self) -> None:
        challenges = {create_challenge(create_verifier(n)) for n in range(43, 129)}
        assert len(challenges) == 128 - 43 + 1
