"""Credentials from an external auth provider command.

The command is run in the unit directory and must print a JSON document with
any of the keys ``envs``, ``awsRole`` and ``awsCredentials``. Each key is
turned into environment variables for the wrapped tool; when several keys set
the same variable, ``awsCredentials`` wins over ``awsRole``, which wins over
``envs``.
"""

import json
import logging
import shlex
import subprocess
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

AWS_CREDENTIAL_VARS = {
    "ACCESS_KEY_ID": "AWS_ACCESS_KEY_ID",
    "SECRET_ACCESS_KEY": "AWS_SECRET_ACCESS_KEY",
    "SESSION_TOKEN": "AWS_SESSION_TOKEN",
}

AWS_ROLE_VARS = {
    "roleARN": "AWS_ROLE_ARN",
    "roleSessionName": "AWS_ROLE_SESSION_NAME",
    "duration": "AWS_ROLE_DURATION",
    "webIdentityToken": "AWS_WEB_IDENTITY_TOKEN",
}


class CredentialsError(Exception):
    """Base exception for auth provider errors."""

    pass


def _string_map(value: Any, key: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise CredentialsError(f"Auth provider '{key}' must be an object")
    return {str(k): str(v) for k, v in value.items() if v is not None and v != ""}


def credentials_to_env(document: Dict[str, Any]) -> Dict[str, str]:
    """Convert an auth provider document to environment variables.

    Args:
        document: Decoded JSON printed by the auth provider command.

    Returns:
        Environment variables for the wrapped tool.

    Raises:
        CredentialsError: If a recognized key has the wrong shape.
    """
    if not isinstance(document, dict):
        raise CredentialsError("Auth provider output must be a JSON object")

    env = _string_map(document.get("envs"), "envs")

    role = _string_map(document.get("awsRole"), "awsRole")
    if role:
        if "roleARN" not in role:
            raise CredentialsError("Auth provider 'awsRole' must set 'roleARN'")
        for key, var in AWS_ROLE_VARS.items():
            if key in role:
                env[var] = role[key]

    credentials = _string_map(document.get("awsCredentials"), "awsCredentials")
    if credentials:
        missing = [k for k in ("ACCESS_KEY_ID", "SECRET_ACCESS_KEY") if k not in credentials]
        if missing:
            raise CredentialsError(
                f"Auth provider 'awsCredentials' is missing {', '.join(missing)}"
            )
        for key, var in AWS_CREDENTIAL_VARS.items():
            if key in credentials:
                env[var] = credentials[key]

    return env


def load_credentials(
    command: Optional[str], working_dir: str, env: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """Run the auth provider command and return the environment it provides.

    Args:
        command: Command line of the auth provider. If empty, no credentials.
        working_dir: Directory the command runs in, usually the unit directory.
        env: Environment of the command.

    Returns:
        Environment variables for the wrapped tool.

    Raises:
        CredentialsError: If the command fails or prints invalid output.
    """
    if not command:
        return {}

    args = shlex.split(command)
    logger.debug(f"Running auth provider command in {working_dir}: {args[0]}")
    try:
        result = subprocess.run(
            args,
            cwd=working_dir,
            env=dict(env) if env is not None else None,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        raise CredentialsError(f"Failed to run auth provider command '{args[0]}': {e}")

    if result.returncode != 0:
        raise CredentialsError(
            f"Auth provider command exited with {result.returncode}: {result.stderr.strip()}"
        )
    if not result.stdout.strip():
        return {}

    try:
        document = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise CredentialsError(f"Auth provider command printed invalid JSON: {e}")
    return credentials_to_env(document)
