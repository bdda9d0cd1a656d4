"""
Admin settings lookup used by channel handlers.

Rows live in ``admin_settings`` keyed by (category, key). Secrets are stored
Fernet-encrypted with ``is_encrypted`` set; the Fernet key is derived from
``SETTINGS_ENCRYPTION_KEY`` so any passphrase works as configuration.
"""
import base64
import hashlib
from dataclasses import dataclass
from typing import Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.future import select

from app.config import settings
from app.core.errors import SettingDecryptionError
from app.core.logging import logger
from app.models.settings import AdminSetting


@dataclass(frozen=True)
class SettingValue:
    value: Optional[str]
    is_encrypted: bool = False


class SettingsProvider(Protocol):
    async def get_setting(self, category: str, key: str) -> Optional[SettingValue]:
        ...


def is_truthy(setting: Optional[SettingValue]) -> bool:
    return bool(setting and setting.value and setting.value.strip().lower() == "true")


class SettingsCipher:
    def __init__(self, secret: str):
        key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            raise SettingDecryptionError("Stored setting could not be decrypted") from e


class DbSettingsProvider:
    def __init__(self, session_factory, cipher: Optional[SettingsCipher] = None):
        self.session_factory = session_factory
        self.cipher = cipher or SettingsCipher(settings.SETTINGS_ENCRYPTION_KEY)

    async def get_setting(self, category: str, key: str) -> Optional[SettingValue]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(AdminSetting).filter(
                    AdminSetting.category == category,
                    AdminSetting.key == key,
                    AdminSetting.is_active.is_(True),
                )
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None
        if row.is_encrypted and row.value:
            try:
                return SettingValue(self.cipher.decrypt(row.value), is_encrypted=True)
            except SettingDecryptionError:
                logger.error("Failed to decrypt admin setting", category=category, key=key)
                raise
        return SettingValue(row.value, is_encrypted=row.is_encrypted)

    async def set_setting(self, category: str, key: str, value: str, encrypt: bool = False) -> None:
        """Upsert a setting; used by operators and the test suite."""
        stored = self.cipher.encrypt(value) if encrypt else value
        async with self.session_factory() as session:
            result = await session.execute(
                select(AdminSetting).filter(AdminSetting.category == category, AdminSetting.key == key)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = AdminSetting(category=category, key=key)
                session.add(row)
            row.value = stored
            row.is_encrypted = encrypt
            row.is_active = True
            await session.commit()
