"""
Credential precondition engine.

Looks at a completed fetch attempt and decides whether a form login has to
happen before the attempt can be retried:

    NONE -> NEEDS_LOGIN -> LOGIN_SUBMITTED -> LOGIN_OUTCOME_OBSERVED -> SATISFIED | FAILED

An auth wall is a redirect whose Location lands on a login page of a domain
we hold a form credential for. The engine then links a synthetic POST to the
credential's login URI as the attempt's prerequisite. Once that prerequisite
has been fetched, a redirect response counts as a successful login.

Login attempts themselves are never subject to the check, so a login page
answering a login can not spawn another login. Whether a session is already
established is left to the cookie store: a login is only triggered by
observing another auth redirect.
"""

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urljoin

from src.crawler.credentials import Credential, CredentialStore
from src.crawler.fetch_attempt import FetchAttempt, FetchStatus
from src.crawler.recorder import ByteRecorder
from src.utils.logging import get_logger

logger = get_logger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


class CredentialLoginError(Exception):
    """A login prerequisite did not succeed."""

    def __init__(self, login_url: str, status: int):
        super().__init__(f"login at {login_url} failed with status {status}")
        self.login_url = login_url
        self.status = status


class PreconditionState(Enum):
    NONE = "none"
    NEEDS_LOGIN = "needs_login"
    LOGIN_SUBMITTED = "login_submitted"
    LOGIN_OUTCOME_OBSERVED = "login_outcome_observed"
    SATISFIED = "satisfied"
    FAILED = "failed"


class PreconditionVerdict(Enum):
    SATISFIED = "satisfied"  # Caller may proceed with the attempt
    MUST_FETCH = "must_fetch"  # Fetch the prerequisite first
    NOT_APPLICABLE = "not_applicable"  # Attempt is itself a login; fetch it as is
    FAILED = "failed"  # Login failed; abandon the attempt


@dataclass(frozen=True)
class PreconditionResult:
    verdict: PreconditionVerdict
    state: PreconditionState
    prerequisite: FetchAttempt | None = None
    credential: Credential | None = None

    @property
    def must_fetch(self) -> bool:
        return self.verdict is PreconditionVerdict.MUST_FETCH

    @property
    def may_proceed(self) -> bool:
        return self.verdict in (PreconditionVerdict.SATISFIED, PreconditionVerdict.NOT_APPLICABLE)


def _prepare_login_attempt(login: FetchAttempt, credential: Credential) -> None:
    if credential not in login.credentials:
        login.credentials.append(credential)
    login.method = credential.http_method
    if credential.http_method == "POST":
        login.request_body = credential.encoded_form()
        login.request_content_type = FORM_CONTENT_TYPE


class CredentialPreconditionEngine:
    """Drives form logins ahead of attempts that hit an auth wall."""

    def __init__(self, credential_store: CredentialStore):
        self.credential_store = credential_store

    def check_precondition(self, attempt: FetchAttempt) -> PreconditionResult:
        """Decide whether the attempt may proceed or a login must be fetched first."""
        if attempt.is_login_prerequisite:
            return self._check_login_attempt(attempt)

        if attempt.prerequisite is not None:
            return self._check_pending_login(attempt)

        return self._detect_auth_wall(attempt)

    def _check_login_attempt(self, login: FetchAttempt) -> PreconditionResult:
        credential = login.credentials[0] if login.credentials else None
        if credential is not None:
            _prepare_login_attempt(login, credential)
        logger.debug("Login attempt exempt from credential check", url=login.url)
        return PreconditionResult(PreconditionVerdict.NOT_APPLICABLE, PreconditionState.NONE, credential=credential)

    def _check_pending_login(self, attempt: FetchAttempt) -> PreconditionResult:
        login = attempt.prerequisite
        credential = login.credentials[0] if login.credentials else None

        if login.status == FetchStatus.UNATTEMPTED:
            return PreconditionResult(
                PreconditionVerdict.MUST_FETCH,
                PreconditionState.LOGIN_SUBMITTED,
                prerequisite=login,
                credential=credential,
            )

        logger.debug(
            "Login outcome observed",
            url=attempt.url,
            state=PreconditionState.LOGIN_OUTCOME_OBSERVED.value,
            status=login.status,
        )
        attempt.clear_prerequisite()
        if login.is_redirect():
            logger.info("Login succeeded", url=attempt.url, login_url=login.url, status=login.status)
            return PreconditionResult(PreconditionVerdict.SATISFIED, PreconditionState.SATISFIED, credential=credential)

        logger.info("Login failed", url=attempt.url, login_url=login.url, status=login.status)
        attempt.status = FetchStatus.OTHER_PREREQUISITE_FAILURE
        attempt.non_fatal_failures.append(CredentialLoginError(login.url, login.status))
        return PreconditionResult(PreconditionVerdict.FAILED, PreconditionState.FAILED, credential=credential)

    def _detect_auth_wall(self, attempt: FetchAttempt) -> PreconditionResult:
        if not attempt.is_redirect():
            return PreconditionResult(PreconditionVerdict.SATISFIED, PreconditionState.NONE)
        location = attempt.response_headers.get("location")
        if not location:
            return PreconditionResult(PreconditionVerdict.SATISFIED, PreconditionState.NONE)

        target = urljoin(attempt.url, location)
        for credential in self.credential_store.credentials_for(attempt.host, attempt.port):
            if not credential.is_login_location(target):
                continue
            logger.info(
                "Auth wall detected",
                url=attempt.url,
                location=target,
                credential=credential.key,
                state=PreconditionState.NEEDS_LOGIN.value,
            )
            login = self._create_login_attempt(attempt, credential)
            attempt.prerequisite = login
            return PreconditionResult(
                PreconditionVerdict.MUST_FETCH,
                PreconditionState.LOGIN_SUBMITTED,
                prerequisite=login,
                credential=credential,
            )

        return PreconditionResult(PreconditionVerdict.SATISFIED, PreconditionState.NONE)

    def _create_login_attempt(self, attempt: FetchAttempt, credential: Credential) -> FetchAttempt:
        url = credential.login_url(attempt.url)
        if credential.http_method == "GET" and credential.form_items:
            url = f"{url}{'&' if '?' in url else '?'}{credential.encoded_form().decode('ascii')}"
        login = FetchAttempt(
            url=url,
            method=credential.http_method,
            is_login_prerequisite=True,
            via=attempt,
            recorder=ByteRecorder(attempt.recorder.config),
        )
        _prepare_login_attempt(login, credential)
        return login
