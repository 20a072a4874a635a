"""
Persisted settings record: provider configs with encrypted keys, agent
configs, the KDF salt and the password verifier.

Only encrypted credentials ever reach disk. Saves are atomic (temp file
then rename) and any I/O failure raises StoreIOError.
"""

import base64
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from mnemosyne.agents.models import AgentConfig
from mnemosyne.errors import StoreIOError
from mnemosyne.llm.provider import ProviderConfig
from mnemosyne.security.key_manager import EncryptedPayload

logger = logging.getLogger(__name__)

SETTINGS_VERSION = 1


class SettingsRecord(BaseModel):
    """Everything that must survive a restart apart from the vector index."""

    version: int = Field(default=SETTINGS_VERSION)
    salt: Optional[str] = Field(default=None, description="Base64 KDF salt")
    password_verifier: Optional[EncryptedPayload] = Field(default=None)
    providers: list[ProviderConfig] = Field(default_factory=list)
    agents: list[AgentConfig] = Field(default_factory=list)

    @property
    def salt_bytes(self) -> Optional[bytes]:
        return base64.b64decode(self.salt) if self.salt else None

    def encrypted_payloads(self) -> list[EncryptedPayload]:
        return [p.encrypted_api_key for p in self.providers if p.encrypted_api_key is not None]


def load_settings_record(path: Path) -> SettingsRecord:
    """
    Load the settings record, or an empty one if the file does not exist.

    Raises:
        StoreIOError: If the file cannot be read or parsed
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"No settings file at {path}, starting empty")
        return SettingsRecord()
    try:
        record = SettingsRecord.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        raise StoreIOError(f"Failed to load settings from {path}: {e}", path=str(path)) from e
    logger.debug(f"Loaded settings: {len(record.providers)} providers, {len(record.agents)} agents")
    return record


def save_settings_record(record: SettingsRecord, path: Path) -> None:
    """
    Atomically write the settings record.

    Raises:
        StoreIOError: If writing fails
    """
    path = Path(path)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as e:
        raise StoreIOError(f"Failed to save settings to {path}: {e}", path=str(path)) from e
    logger.debug(f"Saved settings to {path}")
