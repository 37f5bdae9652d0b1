"""Resolve the GitHub token and API base URL.

Token priority:
    1. GH_TOKEN (github.com and GHES)
    2. GH_ENTERPRISE_TOKEN (GHES)
    3. GITHUB_TOKEN
    4. ``gh auth token`` from the gh CLI's stored credentials
"""
import logging
import os
import subprocess
from typing import Mapping, Optional
from gh_forecast.domain.errors import AuthenticationError
from gh_forecast.domain.models import AuthConfig


logger = logging.getLogger(__name__)

TOKEN_VARIABLES = ("GH_TOKEN", "GH_ENTERPRISE_TOKEN", "GITHUB_TOKEN")
BASE_URL_VARIABLES = ("GH_ENTERPRISE_URL", "GITHUB_API_URL")


def get_auth(host: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> AuthConfig:
    """Get the token and base URL for the GitHub API.

    Args:
        host: Optional GHES hostname, e.g. ``github.mycompany.com``
        env: Environment to read, defaults to ``os.environ``

    Raises:
        AuthenticationError: If no token can be resolved
    """
    env = os.environ if env is None else env
    return AuthConfig(token=resolve_token(host, env), base_url=resolve_base_url(host, env))


def resolve_token(host: Optional[str], env: Mapping[str, str]) -> str:
    for variable in TOKEN_VARIABLES:
        if env.get(variable):
            logger.debug(f"Using token from {variable}")
            return env[variable]

    command = ["gh", "auth", "token"]
    if host:
        command += ["--hostname", host]

    try:
        result = subprocess.run(command, capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise AuthenticationError(_auth_help(host)) from e

    token = result.stdout.strip()
    if not token:
        raise AuthenticationError(_auth_help(host))

    logger.debug("Using token from gh CLI")
    return token


def resolve_base_url(host: Optional[str], env: Mapping[str, str]) -> str:
    for variable in BASE_URL_VARIABLES:
        if env.get(variable):
            return env[variable].rstrip("/")
    if host:
        return f"https://{host}/api/v3"
    return "https://api.github.com"


def _auth_help(host: Optional[str]) -> str:
    login = "gh auth login" + (f" --hostname {host}" if host else "")
    return (
        "Unable to get authentication token. Please either:\n"
        f"  1. Run '{login}'\n"
        "  2. Set GH_TOKEN environment variable\n"
        "  3. Set GH_ENTERPRISE_TOKEN environment variable (for GHES)"
    )
