"""
Secure secret management for the NPR story sync CLI

Stores the legacy NPR API key and the CDS bearer token encrypted with Fernet.
Environment variables NPR_API_KEY and NPR_CDS_TOKEN take precedence.
"""

import os
import json
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any

import click
from cryptography.fernet import Fernet, InvalidToken

from config import CONFIG_DIR
from logging_config import logger

SECRET_NAMES = ("api_key", "cds_token")

ENVIRONMENT_VARIABLES = {
    "api_key": "NPR_API_KEY",
    "cds_token": "NPR_CDS_TOKEN",
}


class SecretsManager:
    """Secure management of the NPR API key and CDS token"""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir or CONFIG_DIR)
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.secrets_file = self.config_dir / "secrets.json"
        self.key_file = self.config_dir / ".key"

        # Initialize encryption
        self._setup_encryption()

    def _setup_encryption(self):
        """Setup encryption key for secure storage"""
        if self.key_file.exists():
            with open(self.key_file, "rb") as f:
                self.encryption_key = f.read()
        else:
            # Generate new encryption key
            self.encryption_key = Fernet.generate_key()
            with open(self.key_file, "wb") as f:
                f.write(self.encryption_key)
            # Store key with restricted permissions
            os.chmod(self.key_file, 0o600)

        self.cipher = Fernet(self.encryption_key)

    def store_secret(self, name: str, value: str) -> bool:
        """Encrypt and store one secret ("api_key" or "cds_token")"""
        if name not in SECRET_NAMES:
            raise ValueError(f"Unknown secret: {name}")

        secrets = self._load_secrets()
        secrets[name] = {"value": self._encrypt(value), "created": self._get_timestamp()}
        self._save_secrets(secrets)

        logger.log_operation_end("store_secret", True, name=name)
        return True

    def get_secret(self, name: str) -> Optional[str]:
        """The secret from the environment, else from the encrypted store"""
        env_value = os.getenv(ENVIRONMENT_VARIABLES.get(name, ""), "")
        if env_value:
            return env_value

        entry = self._load_secrets().get(name)
        if not entry:
            return None
        try:
            return self._decrypt(entry["value"])
        except InvalidToken as e:
            logger.log_error(e, {"operation": "get_secret", "name": name})
            return None

    def delete_secret(self, name: str) -> bool:
        secrets = self._load_secrets()
        if name not in secrets:
            return False
        del secrets[name]
        self._save_secrets(secrets)

        logger.log_operation_end("delete_secret", True, name=name)
        return True

    def list_secrets(self) -> Dict[str, Dict[str, Any]]:
        """Stored secret names with their creation time (values left out)"""
        return {
            name: {"created": entry.get("created"), "source": "encrypted"}
            for name, entry in self._load_secrets().items()
        }

    def get_from_environment(self) -> Optional[Dict[str, Any]]:
        """Credentials from environment variables"""
        values = {name: os.getenv(variable) for name, variable in ENVIRONMENT_VARIABLES.items()}
        if not any(values.values()):
            return None
        return {**values, "source": "environment"}

    def interactive_setup(self) -> bool:
        """Prompt for the API key and CDS token and store whichever are given"""
        click.echo("\n🔐 Setting up NPR API credentials")
        click.echo("=" * 50)

        api_key = click.prompt("Legacy NPR API key", default="", show_default=False, hide_input=True)
        cds_token = click.prompt("CDS bearer token", default="", show_default=False, hide_input=True)

        if not api_key and not cds_token:
            click.echo("❌ An API key or CDS token is required")
            return False

        if api_key:
            self.store_secret("api_key", api_key)
        if cds_token:
            self.store_secret("cds_token", cds_token)

        click.echo("🔒 Credentials encrypted and stored locally")
        return True

    def _load_secrets(self) -> Dict[str, Any]:
        """Load secrets from file"""
        if not self.secrets_file.exists():
            return {}

        try:
            with open(self.secrets_file, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.log_error(e, {"operation": "load_secrets"})
            return {}

    def _save_secrets(self, secrets: Dict[str, Any]):
        """Save secrets to file"""
        with open(self.secrets_file, "w") as f:
            json.dump(secrets, f, indent=2)
        # Restrict file permissions
        os.chmod(self.secrets_file, 0o600)

    def _encrypt(self, text: str) -> str:
        """Encrypt text for storage"""
        return self.cipher.encrypt(text.encode()).decode()

    def _decrypt(self, encrypted_text: str) -> str:
        """Decrypt text from storage"""
        return self.cipher.decrypt(encrypted_text.encode()).decode()

    def _get_timestamp(self) -> str:
        return datetime.now().isoformat()
