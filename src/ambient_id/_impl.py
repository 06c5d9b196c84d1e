"""Internal implementation module for `ambient-id`.

This module is NOT a public API, and is not considered stable.
"""

from __future__ import annotations

import json
import logging
import os
import re
import signal
import subprocess
from enum import Enum
from typing import TYPE_CHECKING, NewType, Optional, Protocol

import requests
from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Mapping, Sequence

_logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
"""
The default bound (in seconds) on any network request or subprocess.
"""

_GITHUB_REQUEST_URL = "ACTIONS_ID_TOKEN_REQUEST_URL"
_GITHUB_REQUEST_TOKEN = "ACTIONS_ID_TOKEN_REQUEST_TOKEN"
_GITLAB_MARKER = "GITLAB_CI"
_BUILDKITE_MARKER = "BUILDKITE"
_CIRCLECI_MARKER = "CIRCLECI"

_BUILDKITE_AGENT = "buildkite-agent"
_CIRCLECI_CLI = "circleci"

# Bound on collecting buffered output after a timed-out agent is killed.
_REAP_TIMEOUT = 1.0

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")

Credential = NewType("Credential", str)


class PlatformKind(str, Enum):
    """CI platforms that can provide an ambient OIDC credential.

    Members are declared in detection priority order.
    """

    GITHUB_ACTIONS = "GitHub Actions"
    GITLAB_CI = "GitLab CI"
    BUILDKITE = "BuildKite"
    CIRCLECI = "CircleCI"


class AmbientCredentialError(Exception):
    """Base error for all APIs."""

    def __init__(self, detail: str, *, platform: Optional[PlatformKind] = None) -> None:
        """Initialize an `AmbientCredentialError`."""
        self.detail = detail
        self.platform = platform
        if platform is not None:
            super().__init__(f"{platform.value}: {detail}")
        else:
            super().__init__(detail)


class NoAmbientCredential(AmbientCredentialError):
    """No supported CI platform was detected."""

    def __init__(self) -> None:
        """Initialize a `NoAmbientCredential`."""
        super().__init__("no ambient OIDC credential available in this environment")


class RetrievalError(AmbientCredentialError):
    """A platform was detected, but its token could not be retrieved."""


class TokenNotFound(RetrievalError):
    """The platform does not provide a token for the requested audience."""

    def __init__(self, variable: str, *, platform: PlatformKind) -> None:
        """Initialize a `TokenNotFound`."""
        self.variable = variable
        super().__init__(f"ID token variable not found: {variable}", platform=platform)


class InconsistentEnvironment(RetrievalError):
    """The environment changed between detection and retrieval."""


class TransportError(RetrievalError):
    """A network or subprocess I/O failure. May be transient."""


class UnexpectedStatus(TransportError):
    """The token endpoint responded with a non-success status."""

    def __init__(self, status_code: int, *, platform: PlatformKind) -> None:
        """Initialize an `UnexpectedStatus`."""
        self.status_code = status_code
        super().__init__(
            f"token endpoint returned HTTP status {status_code}", platform=platform
        )


class RetrievalTimeout(TransportError):
    """The token request or subprocess did not finish within the timeout."""

    def __init__(self, detail: str, *, platform: PlatformKind, stderr: str = "") -> None:
        """Initialize a `RetrievalTimeout`."""
        self.stderr = stderr
        if stderr:
            detail = f"{detail}: {stderr}"
        super().__init__(detail, platform=platform)


class MalformedResponse(RetrievalError):
    """The token response did not have the expected shape."""


class ProcessError(RetrievalError):
    """A token-providing subprocess could not be run or failed."""

    def __init__(self, detail: str, *, platform: PlatformKind, stderr: str = "") -> None:
        """Initialize a `ProcessError`."""
        self.stderr = stderr
        if stderr:
            detail = f"{detail}: {stderr}"
        super().__init__(detail, platform=platform)


class AgentNotFound(ProcessError):
    """The token-providing binary is missing or not executable."""


class AgentFailed(ProcessError):
    """The token-providing binary exited unsuccessfully."""

    def __init__(
        self, detail: str, *, platform: PlatformKind, returncode: int, stderr: str = ""
    ) -> None:
        """Initialize an `AgentFailed`."""
        self.returncode = returncode
        super().__init__(detail, platform=platform, stderr=stderr)


class EmptyOutput(ProcessError):
    """The token-providing binary succeeded but printed no token."""


class Environment:
    """A read-only view of environment variables.

    By default this reads the live process environment on every lookup;
    an explicit mapping can be supplied instead, which keeps tests (and
    nested contexts) from having to mutate the real process environment.
    """

    def __init__(self, mapping: Optional[Mapping[str, str]] = None) -> None:
        """Initialize an `Environment` over `mapping`, or the process environment."""
        self._mapping = mapping

    def read(self, name: str) -> Optional[str]:
        """Return the value of `name`, or `None` if it is unset or empty."""
        mapping = os.environ if self._mapping is None else self._mapping
        return mapping.get(name) or None

    def as_dict(self) -> dict[str, str]:
        """Return a snapshot of the variables, suitable for a child process."""
        mapping = os.environ if self._mapping is None else self._mapping
        return dict(mapping)


def encode_audience(audience: str) -> str:
    """Encode an audience into the name of its GitLab CI ID token variable.

    Every character that is not an ASCII letter or digit becomes `_`,
    letters are uppercased, and `_ID_TOKEN` is appended: audience
    `sigstore.dev` is looked up as `SIGSTORE_DEV_ID_TOKEN`.
    """
    # NOTE: Substitute before uppercasing; `str.upper()` maps some
    # non-ASCII characters (e.g. "ı") onto ASCII letters.
    return f"{_NON_ALNUM.sub('_', audience).upper()}_ID_TOKEN"


class _Platform(Protocol):
    kind: PlatformKind

    def detect(self) -> Optional[PlatformKind]: ...

    def retrieve(self, audience: str) -> Credential: ...


class _GitHubTokenResponse(BaseModel):
    value: str


class GitHubActions:
    """Obtains an ID token from GitHub Actions' token request endpoint.

    The endpoint and its bearer token are only exposed to jobs with the
    `id-token: write` permission.
    """

    kind = PlatformKind.GITHUB_ACTIONS

    def __init__(self, env: Environment, *, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._env = env
        self._timeout = timeout

    def detect(self) -> Optional[PlatformKind]:
        """Detect the token request URL and bearer token."""
        if self._env.read(_GITHUB_REQUEST_URL) and self._env.read(_GITHUB_REQUEST_TOKEN):
            return self.kind

        if self._env.read("GITHUB_ACTIONS"):
            _logger.debug(
                "running on GitHub Actions without an ID token request URL/token; "
                "does the workflow grant `id-token: write`?"
            )
        return None

    def retrieve(self, audience: str) -> Credential:
        """Request a token for `audience` from the token request endpoint."""
        url = self._env.read(_GITHUB_REQUEST_URL)
        bearer = self._env.read(_GITHUB_REQUEST_TOKEN)
        if url is None or bearer is None:
            raise InconsistentEnvironment(
                f"{_GITHUB_REQUEST_URL} or {_GITHUB_REQUEST_TOKEN} disappeared after detection",
                platform=self.kind,
            )

        try:
            response = requests.get(
                url,
                params={"audience": audience},
                headers={"Authorization": f"bearer {bearer}"},
                timeout=self._timeout,
            )
        except requests.Timeout as e:
            raise RetrievalTimeout(
                f"token request timed out after {self._timeout}s", platform=self.kind
            ) from e
        except requests.RequestException as e:
            raise TransportError(f"token request failed: {e}", platform=self.kind) from e

        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise UnexpectedStatus(response.status_code, platform=self.kind) from e

        try:
            payload = _GitHubTokenResponse.model_validate_json(response.text)
        except ValidationError as e:
            raise MalformedResponse(f"invalid token response: {e}", platform=self.kind) from e

        if not payload.value:
            raise MalformedResponse("token response has an empty value", platform=self.kind)

        return Credential(payload.value)


class GitLabCI:
    """Reads a pre-provisioned ID token from GitLab CI's job environment.

    Tokens are configured per audience through the job's `id_tokens`
    block, which exposes them as `<AUDIENCE>_ID_TOKEN`.
    """

    kind = PlatformKind.GITLAB_CI

    def __init__(self, env: Environment) -> None:
        self._env = env

    def detect(self) -> Optional[PlatformKind]:
        return self.kind if self._env.read(_GITLAB_MARKER) else None

    def retrieve(self, audience: str) -> Credential:
        """Return the `<AUDIENCE>_ID_TOKEN` variable for `audience`."""
        variable = encode_audience(audience)
        token = self._env.read(variable)
        if token is None:
            raise TokenNotFound(variable, platform=self.kind)
        return Credential(token)


def _kill_group(proc: subprocess.Popen[str]) -> None:
    """Kill `proc` and every process in its process group."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except AttributeError:  # pragma: no cover
        # No process groups (Windows).
        proc.kill()


def _run_agent(
    argv: Sequence[str], *, platform: PlatformKind, env: Environment, timeout: float
) -> Credential:
    """Run a token-providing agent and return its trimmed standard output.

    The agent runs in its own process group. If the timeout expires the
    whole group is killed, so helpers it forked cannot keep the pipes open,
    and `Popen`'s context manager reaps the child on every exit path.
    """
    _logger.debug("running %s", " ".join(argv))
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env.as_dict(),
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
    except OSError as e:
        raise AgentNotFound(f"could not run {argv[0]}: {e}", platform=platform) from e

    with proc:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            _kill_group(proc)
            try:
                _, stderr = proc.communicate(timeout=_REAP_TIMEOUT)
            except subprocess.TimeoutExpired:
                # Something outside the group still holds the pipes.
                stderr = ""
            raise RetrievalTimeout(
                f"{argv[0]} did not finish within {timeout}s",
                platform=platform,
                stderr=stderr.strip(),
            ) from e

    stderr = stderr.strip()
    if proc.returncode != 0:
        if proc.returncode < 0:
            detail = f"{argv[0]} terminated by signal {-proc.returncode}"
        else:
            detail = f"{argv[0]} exited with code {proc.returncode}"
        raise AgentFailed(detail, platform=platform, returncode=proc.returncode, stderr=stderr)

    token = stdout.strip()
    if not token:
        raise EmptyOutput(f"{argv[0]} produced no token", platform=platform, stderr=stderr)

    return Credential(token)


class BuildKite:
    """Requests an ID token from the BuildKite agent.

    The agent relies on the job's ambient BuildKite state, so it runs
    with the same environment the detection saw.
    """

    kind = PlatformKind.BUILDKITE

    def __init__(self, env: Environment, *, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._env = env
        self._timeout = timeout

    def detect(self) -> Optional[PlatformKind]:
        return self.kind if self._env.read(_BUILDKITE_MARKER) else None

    def retrieve(self, audience: str) -> Credential:
        """Run `buildkite-agent oidc request-token` for `audience`."""
        return _run_agent(
            [_BUILDKITE_AGENT, "oidc", "request-token", "--audience", audience],
            platform=self.kind,
            env=self._env,
            timeout=self._timeout,
        )


class CircleCI:
    """Requests an ID token from the CircleCI CLI."""

    kind = PlatformKind.CIRCLECI

    def __init__(self, env: Environment, *, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._env = env
        self._timeout = timeout

    def detect(self) -> Optional[PlatformKind]:
        return self.kind if self._env.read(_CIRCLECI_MARKER) else None

    def retrieve(self, audience: str) -> Credential:
        claims = json.dumps({"aud": audience})
        return _run_agent(
            [_CIRCLECI_CLI, "run", "oidc", "get", "--root-issuer", "--claims", claims],
            platform=self.kind,
            env=self._env,
            timeout=self._timeout,
        )


def resolve(
    audience: str,
    *,
    environ: Optional[Mapping[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Credential:
    """Resolve an ambient OIDC identity token for `audience`.

    Platforms are tried in a fixed order: GitHub Actions, GitLab CI,
    BuildKite, then CircleCI. The first platform that is detected is the
    only one asked for a token; if its retrieval fails, the resulting
    `RetrievalError` is raised rather than trying the next platform.

    `environ` replaces the process environment for both detection and
    retrieval. `timeout` bounds any network request or subprocess.

    Raises `NoAmbientCredential` if no platform is detected.
    """
    env = Environment(environ)
    platforms: list[_Platform] = [
        GitHubActions(env, timeout=timeout),
        GitLabCI(env),
        BuildKite(env, timeout=timeout),
        CircleCI(env, timeout=timeout),
    ]

    for platform in platforms:
        kind = platform.detect()
        if kind is None:
            _logger.debug("%s: not detected", platform.kind.value)
            continue

        _logger.debug("%s: detected, requesting token for %r", kind.value, audience)
        token = platform.retrieve(audience)
        _logger.debug("%s: obtained token", kind.value)
        return token

    raise NoAmbientCredential()


def detect_credential(
    audience: str,
    *,
    environ: Optional[Mapping[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Optional[Credential]:
    """Like `resolve`, but return `None` when no platform is detected.

    Retrieval failures on a detected platform are still raised.
    """
    try:
        return resolve(audience, environ=environ, timeout=timeout)
    except NoAmbientCredential:
        return None
