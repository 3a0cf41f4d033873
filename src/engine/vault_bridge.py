# src/engine/vault_bridge.py
"""
SecretVaultBridge: turns provider credentials stored under the master key into
the per-job ``scan.yaml`` the playbooks consume.

Provider secrets never appear in clear text in the generated file. Each one is
embedded as an inline ``!vault |`` block encrypted with the job's own
ephemeral secret, which the executor hands to ansible as the vault password.
"""

import json
import logging
from typing import Dict

import yaml

from engine.errors import CredentialError, GenerationError
from engine.models import Provider, ScanJob
from tools.vault_adapter import indent_vault_block
from utils import crypto

REQUIRED_KEYS = {
    "s3": ("access_key", "secret_key"),
    "aws": ("access_key", "secret_key"),
    "digitalocean": ("api_key",),
}


class VaultLoader(yaml.SafeLoader):
    """SafeLoader that reads `!vault` scalars as plain strings."""


VaultLoader.add_constructor("!vault", lambda loader, node: loader.construct_scalar(node))


def load_scan_vars(text: str) -> dict:
    return yaml.load(text, Loader=VaultLoader)


def _q(value) -> str:
    # a JSON string is a valid double-quoted YAML scalar
    return json.dumps("" if value is None else str(value))


class SecretVaultBridge:
    def __init__(self, store, vault, master_key: str):
        self.store = store
        self.vault = vault
        self.master_key = master_key

    def provider_keys(self, provider: Provider) -> Dict[str, str]:
        keys = {}
        for credential in self.store.provider_credentials(provider.id):
            if not credential.key:
                continue
            try:
                plain = crypto.decrypt(credential.key, self.master_key)
            except ValueError as e:
                logging.warning(f"[provider={provider.id}] Skipping {credential.key_type} that failed to decrypt: {e}")
                continue
            if provider.provider_type == "digitalocean":
                keys["api_key"] = plain
            elif credential.key_type in ("access_key", "secret_key", "api_key"):
                keys[credential.key_type] = plain

        for required in REQUIRED_KEYS.get(provider.provider_type, ()):
            if required not in keys:
                raise CredentialError(f"{required} not found for provider {provider.id}")
        logging.info(f"[provider={provider.id}] Decrypted {len(keys)} key(s) for {provider.provider_type}")
        return keys

    def vault_encrypt(self, name: str, value: str, password: str) -> str:
        return self.vault.encrypt_string(name, value, password)

    def _vault_field(self, name: str, value: str, password: str, indent: int) -> str:
        block = self.vault_encrypt(name, value, password)
        return " " * indent + f"{name}: !vault |\n" + indent_vault_block(block, indent + 4)

    def _bucket_section(self, label: str, provider: Provider, password: str, path_setting: str) -> str:
        keys = self.provider_keys(provider)
        settings = provider.settings or {}
        lines = [
            f"  {label}:",
            f"    bucket: {_q(settings.get('bucket'))}",
            f"    endpoint: {_q(settings.get('endpoint'))}",
            f"    region: {_q(settings.get('region'))}",
            f"    use_path_style: {'true' if settings.get('use_path_style') else 'false'}",
            f"    path: {_q(settings.get(path_setting))}",
            f"    provider_id: {_q(provider.id)}",
            self._vault_field("access_key", keys["access_key"], password, 4),
            self._vault_field("secret_key", keys["secret_key"], password, 4),
        ]
        return "\n".join(lines)

    def _vm_section(self, provider: Provider, vm_size: str, password: str) -> str:
        keys = self.provider_keys(provider)
        settings = provider.settings or {}
        if provider.provider_type == "digitalocean":
            if not vm_size:
                raise GenerationError("vm_size not found in scan profile")
            tags = settings.get("tags") or []
            if isinstance(tags, str):
                tags = [t for t in tags.split(",") if t]
            return "\n".join([
                "vm:",
                '  provider_service: "DigitalOcean"',
                self._vault_field("provider_key", keys["api_key"], password, 2),
                f"  do_project: {_q(settings.get('do_project'))}",
                f"  do_region: {_q(settings.get('region'))}",
                f"  tags: {_q(','.join(tags))}",
                f"  do_size: {_q(vm_size)}",
            ])
        if provider.provider_type == "aws":
            return "\n".join([
                "vm:",
                '  provider_service: "AWS"',
                f"  account_id: {_q(settings.get('account_id'))}",
                "provider:",
                '  name: "aws"',
                f"  region: {_q(settings.get('region'))}",
                self._vault_field("api_key", keys["access_key"], password, 2),
                self._vault_field("secret_key", keys["secret_key"], password, 2),
            ])
        raise GenerationError(f"unsupported compute provider type {provider.provider_type}")

    def build_scan_vars(self, job: ScanJob) -> str:
        """Render scan.yaml for a job whose ephemeral secret has already been minted."""
        password = job.ephemeral_secret
        if not password:
            raise GenerationError(f"scan {job.id} has no ephemeral secret")

        client = self.store.get_client(job.client_id)
        interact = self.store.find_interact(job.interact_id)
        profile = self.store.get_profile(job.scan_profile_id)

        parts = ["\n".join([
            "---",
            f"client: {_q(client.name)}",
            f"client_hidden_name: {_q(client.hidden_name)}",
            f"client_id: {_q(client.id)}",
            f"interact_url: {_q(interact.url if interact else '')}",
            f"interact_token: {_q(interact.token if interact else '')}",
            f"api_key: {_q(password)}",
        ])]

        buckets = []
        if profile.state_bucket_id:
            provider = self.store.get_provider(profile.state_bucket_id)
            if provider.provider_type == "s3":
                buckets.append(self._bucket_section("state", provider, password, "statefile_path"))
        if profile.scan_bucket_id:
            provider = self.store.get_provider(profile.scan_bucket_id)
            if provider.provider_type == "s3":
                buckets.append(self._bucket_section("scan", provider, password, "scans_path"))
        if buckets:
            parts.append("s3:\n" + "\n".join(buckets))

        vm_provider = self.store.get_provider(profile.vm_provider_id)
        parts.append(self._vm_section(vm_provider, job.vm_size or profile.vm_size, password))

        logging.info(f"[job_id={job.id}] Built scan variables with {len(buckets)} bucket section(s)")
        return "\n".join(parts) + "\n"
