"""
Credential store access.

The cost engine never keeps secrets on accounts; it asks a credential store
for a decrypted copy right before each provider call and drops it afterwards.
"""

import logging
from abc import ABC, abstractmethod

from pydantic import SecretStr, ValidationError

from ..providers.base import CredentialNotFound, Credentials, DecryptionError

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Abstract source of decrypted provider credentials."""

    @abstractmethod
    def get_decrypted_credentials(self, credential_ref: str) -> Credentials:
        """
        Return a transient copy of the credentials behind a reference.

        Raises:
            CredentialNotFound: nothing is stored under the reference
            DecryptionError: the stored material could not be decrypted or read
        """
        pass

    @abstractmethod
    def put_credentials(self, credential_ref: str, credentials: Credentials) -> None:
        pass

    @abstractmethod
    def delete_credentials(self, credential_ref: str) -> bool:
        pass


class MemoryCredentialStore(CredentialStore):
    """Keeps credentials in process memory."""

    def __init__(self, initial: dict[str, Credentials] | None = None):
        self._credentials: dict[str, Credentials] = dict(initial or {})

    def get_decrypted_credentials(self, credential_ref: str) -> Credentials:
        try:
            return self._credentials[credential_ref].model_copy()
        except KeyError:
            raise CredentialNotFound(f"No credentials stored for '{credential_ref}'") from None

    def put_credentials(self, credential_ref: str, credentials: Credentials) -> None:
        self._credentials[credential_ref] = credentials

    def delete_credentials(self, credential_ref: str) -> bool:
        return self._credentials.pop(credential_ref, None) is not None


class SettingsCredentialStore(CredentialStore):
    """
    Reads credentials from the `credentials` section of the dynaconf settings,
    normally populated from ~/.cloudbridge/.secrets.yaml or environment variables.
    Writes stay in memory for the lifetime of the process.
    """

    def __init__(self, config=None):
        if config is None:
            from ..config.settings import get_config

            config = get_config()
        self.config = config
        self._overrides = MemoryCredentialStore()
        self._deleted: set[str] = set()

    def get_decrypted_credentials(self, credential_ref: str) -> Credentials:
        if credential_ref in self._deleted:
            raise CredentialNotFound(f"No credentials stored for '{credential_ref}'")
        try:
            return self._overrides.get_decrypted_credentials(credential_ref)
        except CredentialNotFound:
            pass

        section = self.config.get_credentials_section(credential_ref)
        if not section:
            raise CredentialNotFound(
                f"No credentials configured for '{credential_ref}' "
                f"(expected credentials.{credential_ref} in the secrets file)"
            )

        try:
            credentials = Credentials(
                access_key_id=section.get("access_key_id"),
                secret_access_key=SecretStr(str(section.get("secret_access_key") or "")),
                session_token=(
                    SecretStr(str(section["session_token"])) if section.get("session_token") else None
                ),
            )
        except ValidationError as e:
            # Never echo the offending values
            fields = ", ".join(str(err["loc"][0]) for err in e.errors())
            raise DecryptionError(
                f"Credentials for '{credential_ref}' are unreadable (fields: {fields})"
            ) from None

        logger.debug(f"Loaded credentials for '{credential_ref}' from settings")
        return credentials

    def put_credentials(self, credential_ref: str, credentials: Credentials) -> None:
        self._deleted.discard(credential_ref)
        self._overrides.put_credentials(credential_ref, credentials)

    def delete_credentials(self, credential_ref: str) -> bool:
        existed = self._overrides.delete_credentials(credential_ref) or bool(
            self.config.get_credentials_section(credential_ref)
        )
        self._deleted.add(credential_ref)
        return existed
