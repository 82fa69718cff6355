"""Provider credential and SSH private key storage.

Bridges the record store and the credential vault. Ciphertext is always
bound to (team_id, scope) where scope is the provider account id for
provider credentials and the SSH key id for private keys.

A record that fails to decrypt is deleted before CredentialCorruptedError
is raised; the operator must re-enter the secret.
"""

from typing import Any

from machina.db.models import ProviderAccount, SSHKey
from machina.logging_config import get_logger
from machina.services.credential_vault import CredentialVault, VaultError, get_vault
from machina.store.protocol import RecordStore

logger = get_logger(__name__)


class CredentialsNotFoundError(LookupError):
    """No stored credentials for the requested scope."""


class CredentialCorruptedError(ValueError):
    """Stored ciphertext could not be decrypted and has been removed."""


async def store_credentials(
    store: RecordStore,
    account: ProviderAccount,
    credentials: dict[str, Any],
    vault: CredentialVault | None = None,
) -> None:
    """Encrypt and store credentials for a provider account, replacing any previous record."""
    vault = vault or get_vault()
    encrypted = vault.encrypt(account.team_id, account.id, credentials)
    await store.put_encrypted_credential(account.id, encrypted)
    logger.info("Stored provider credentials", account_id=account.id, team_id=account.team_id)


async def get_credentials(
    store: RecordStore,
    account: ProviderAccount,
    vault: CredentialVault | None = None,
) -> dict[str, Any]:
    """Decrypt a provider account's credentials."""
    vault = vault or get_vault()
    encrypted = await store.get_encrypted_credential(account.id)
    if encrypted is None:
        raise CredentialsNotFoundError(f"No credentials stored for provider account {account.id}")

    try:
        return vault.decrypt(account.team_id, account.id, encrypted)
    except VaultError as e:
        logger.error(
            "Corrupt provider credentials, deleting record",
            account_id=account.id,
            team_id=account.team_id,
            error=str(e),
        )
        await store.delete_encrypted_credential(account.id)
        raise CredentialCorruptedError(
            f"Credentials for provider account {account.id} are corrupted and were removed; "
            "re-enter them to continue"
        ) from e


async def delete_credentials(store: RecordStore, account: ProviderAccount) -> None:
    await store.delete_encrypted_credential(account.id)
    logger.info("Deleted provider credentials", account_id=account.id, team_id=account.team_id)


async def store_ssh_private_key(
    store: RecordStore,
    key: SSHKey,
    private_key: str,
    vault: CredentialVault | None = None,
) -> None:
    vault = vault or get_vault()
    encrypted = vault.encrypt(key.team_id, key.id, {"private_key": private_key})
    await store.put_ssh_key_secret(key.id, encrypted)
    logger.info("Stored SSH private key", ssh_key_id=key.id, team_id=key.team_id)


async def get_ssh_private_key(
    store: RecordStore,
    key: SSHKey,
    vault: CredentialVault | None = None,
) -> str:
    """Decrypt an SSH private key for the remote shell proxy and repository sync."""
    vault = vault or get_vault()
    encrypted = await store.get_ssh_key_secret(key.id)
    if encrypted is None:
        raise CredentialsNotFoundError(f"No private key stored for SSH key {key.id}")

    try:
        data = vault.decrypt(key.team_id, key.id, encrypted)
    except VaultError as e:
        logger.error(
            "Corrupt SSH private key, deleting record",
            ssh_key_id=key.id,
            team_id=key.team_id,
            error=str(e),
        )
        await store.delete_ssh_key_secret(key.id)
        raise CredentialCorruptedError(
            f"Private key for SSH key {key.id} is corrupted and was removed"
        ) from e

    private_key = data.get("private_key")
    if not isinstance(private_key, str):
        raise CredentialCorruptedError(f"Private key for SSH key {key.id} is malformed")
    return private_key
