"""
Tests for the credential precondition engine.

## Test Perspectives Table
| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|----------------------|---------------------------------------|-----------------|-------|
| TC-PC-01 | 200 response | Equivalence – no wall | SATISFIED / NONE | - |
| TC-PC-02 | Redirect to login page with credential | Equivalence – wall | MUST_FETCH, POST prerequisite | - |
| TC-PC-03 | Redirect to login page, no credential | Boundary – wall | SATISFIED | - |
| TC-PC-04 | Redirect elsewhere | Boundary – wall | SATISFIED | - |
| TC-PC-05 | Prerequisite not yet fetched | Equivalence – pending | MUST_FETCH again | - |
| TC-PC-06 | Prerequisite answered 3xx | Equivalence – login ok | SATISFIED, link cleared | - |
| TC-PC-07 | Prerequisite answered 403 | Abnormal – login failed | FAILED, -62, error recorded | - |
| TC-PC-08 | Login attempt itself | Equivalence – exemption | NOT_APPLICABLE | - |
| TC-PC-09 | GET credential | Equivalence – method | Form in query string | - |
"""

import httpx
import pytest

from src.crawler.credentials import Credential, CredentialStore
from src.crawler.fetch_attempt import FetchAttempt, FetchStatus
from src.crawler.precondition import (
    FORM_CONTENT_TYPE,
    CredentialLoginError,
    CredentialPreconditionEngine,
    PreconditionState,
    PreconditionVerdict,
)

pytestmark = pytest.mark.unit

PAGE_URL = "http://localhost:7779/auth/1"


@pytest.fixture
def credential() -> Credential:
    return Credential(
        key="form-auth-credential",
        domain="localhost:7779",
        login_uri="/j_security_check",
        form_items={"j_username": "alice", "j_password": "s3cret"},
    )


@pytest.fixture
def precondition_engine(credential) -> CredentialPreconditionEngine:
    return CredentialPreconditionEngine(CredentialStore({credential.key: credential}))


def _redirected(url: str, location: str) -> FetchAttempt:
    attempt = FetchAttempt(url=url)
    attempt.status = 302
    attempt.response_headers = httpx.Headers({"Location": location})
    return attempt


class TestAuthWallDetection:
    def test_ok_response(self, precondition_engine):
        attempt = FetchAttempt(url=PAGE_URL)
        attempt.status = 200

        result = precondition_engine.check_precondition(attempt)

        assert result.verdict is PreconditionVerdict.SATISFIED
        assert result.state is PreconditionState.NONE
        assert result.may_proceed

    def test_redirect_to_login_page(self, precondition_engine, credential):
        # Given: a redirect to the login page of a credentialed domain
        attempt = _redirected(PAGE_URL, "/login.html")

        # When: the precondition is checked
        result = precondition_engine.check_precondition(attempt)

        # Then: a POST login to the credential's URI must be fetched first
        assert result.must_fetch
        assert result.state is PreconditionState.LOGIN_SUBMITTED
        assert result.credential is credential
        login = result.prerequisite
        assert attempt.prerequisite is login
        assert login.url == "http://localhost:7779/j_security_check"
        assert login.method == "POST"
        assert login.request_body == b"j_username=alice&j_password=s3cret"
        assert login.request_content_type == FORM_CONTENT_TYPE
        assert login.is_login_prerequisite
        assert login.via is attempt
        assert login.credentials == [credential]
        assert login.status == FetchStatus.UNATTEMPTED

    def test_no_credential_for_domain(self, precondition_engine):
        attempt = _redirected("http://example.test/private", "/login.html")

        result = precondition_engine.check_precondition(attempt)

        assert result.verdict is PreconditionVerdict.SATISFIED
        assert attempt.prerequisite is None

    def test_redirect_elsewhere(self, precondition_engine):
        attempt = _redirected(PAGE_URL, "/auth/2")

        result = precondition_engine.check_precondition(attempt)

        assert result.verdict is PreconditionVerdict.SATISFIED

    def test_redirect_without_location(self, precondition_engine):
        attempt = FetchAttempt(url=PAGE_URL)
        attempt.status = 302

        assert precondition_engine.check_precondition(attempt).verdict is PreconditionVerdict.SATISFIED

    def test_get_credential_puts_form_in_query(self):
        credential = Credential(
            key="k",
            domain="localhost:7779",
            login_uri="/do-login?src=crawler",
            http_method="GET",
            form_items={"user": "alice"},
        )
        engine = CredentialPreconditionEngine(CredentialStore({credential.key: credential}))

        result = engine.check_precondition(_redirected(PAGE_URL, "http://localhost:7779/login"))

        assert result.prerequisite.method == "GET"
        assert result.prerequisite.url == "http://localhost:7779/do-login?src=crawler&user=alice"
        assert result.prerequisite.request_body is None


class TestLoginOutcome:
    def test_pending_prerequisite(self, precondition_engine):
        attempt = _redirected(PAGE_URL, "/login.html")
        first = precondition_engine.check_precondition(attempt)

        again = precondition_engine.check_precondition(attempt)

        assert again.must_fetch
        assert again.prerequisite is first.prerequisite

    def test_login_redirect_is_success(self, precondition_engine):
        # Given: a login prerequisite that answered with a redirect
        attempt = _redirected(PAGE_URL, "/login.html")
        login = precondition_engine.check_precondition(attempt).prerequisite
        login.status = 302

        # When: the original attempt is checked again
        result = precondition_engine.check_precondition(attempt)

        # Then: the login counts as done and the link is cleared
        assert result.verdict is PreconditionVerdict.SATISFIED
        assert result.state is PreconditionState.SATISFIED
        assert attempt.prerequisite is None

    def test_login_error_fails_attempt(self, precondition_engine):
        attempt = _redirected(PAGE_URL, "/login.html")
        login = precondition_engine.check_precondition(attempt).prerequisite
        login.status = 403

        result = precondition_engine.check_precondition(attempt)

        assert result.verdict is PreconditionVerdict.FAILED
        assert not result.may_proceed
        assert attempt.status == FetchStatus.OTHER_PREREQUISITE_FAILURE == -62
        assert attempt.prerequisite is None
        error = attempt.non_fatal_failures[-1]
        assert isinstance(error, CredentialLoginError)
        assert error.status == 403

    def test_login_attempt_is_exempt(self, precondition_engine):
        attempt = _redirected(PAGE_URL, "/login.html")
        login = precondition_engine.check_precondition(attempt).prerequisite
        # Login page redirecting to itself must not spawn another login
        login.status = 302
        login.response_headers = httpx.Headers({"Location": "/login.html"})

        result = precondition_engine.check_precondition(login)

        assert result.verdict is PreconditionVerdict.NOT_APPLICABLE
        assert result.may_proceed
        assert login.prerequisite is None
