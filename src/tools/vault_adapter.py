# src/tools/vault_adapter.py
from .base import secret_file
from engine.errors import GenerationError
import os
import re
import subprocess
import tempfile

# ansible-vault prints version and config chatter before the encrypted block
NOISE_MARKERS = (
    "ansible-vault",
    "config file",
    "python version",
    "jinja version",
    "libyaml",
    "No config file found",
    "encrypt_vault_id",
)
HEX_LINE = re.compile(r"^[0-9a-fA-F]+$")


def clean_vault_output(output: str) -> str:
    """Keep only the `$ANSIBLE_VAULT` header and the hex lines after it."""
    cleaned = []
    in_vault = False
    for line in output.splitlines():
        if not line.strip() or any(marker in line for marker in NOISE_MARKERS):
            continue
        if "$ANSIBLE_VAULT" in line:
            in_vault = True
            cleaned.append(line.strip())
            continue
        if in_vault:
            if not HEX_LINE.match(line.strip()):
                break
            cleaned.append(line.strip())
    return "\n".join(cleaned)


def indent_vault_block(block: str, indent: int) -> str:
    pad = " " * indent
    return "\n".join(pad + line.strip() for line in block.splitlines() if line.strip())


class AnsibleVaultAdapter:
    def __init__(self, run=subprocess.run):
        self.run = run

    def encrypt_string(self, name: str, value: str, password: str) -> str:
        """Encrypt `value` under `password`; returns the bare vault block."""
        fd, path = tempfile.mkstemp(prefix="vault-pass-")
        os.close(fd)
        with secret_file(path, password):
            result = self.run(
                ["ansible-vault", "encrypt_string", "--vault-password-file", path, "--stdin-name", name],
                input=value,
                capture_output=True,
                text=True,
                check=False,
            )
        if result.returncode != 0:
            raise GenerationError(f"ansible-vault failed to encrypt {name}: {result.stderr.strip()}")
        block = clean_vault_output(result.stdout)
        if not block:
            raise GenerationError(f"ansible-vault returned no vault block for {name}")
        return block
