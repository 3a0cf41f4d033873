# src/tools/ansible_adapter.py
from .base import AutomationToolAdapter, secret_file
from engine.checkpointer import LogCheckpointer
from engine.errors import ExecutionError
from engine.logs import STDERR, STDOUT
import logging
import os
import subprocess
import sys
import threading

ANSIBLE_ENV = {
    "ANSIBLE_HOST_KEY_CHECKING": "False",
    "ANSIBLE_RETRY_FILES_ENABLED": "False",
    "ANSIBLE_FORCE_COLOR": "true",
    "ANSIBLE_ACTION_WARNINGS": "False",
    "ANSIBLE_STDOUT_CALLBACK": "default",
}


class AnsibleAdapter(AutomationToolAdapter):
    def __init__(self, base_path, store, show_logs=False, default_timeout=None,
                 checkpointer_factory=None, popen=subprocess.Popen, run=subprocess.run):
        super().__init__(base_path)
        self.store = store
        self.show_logs = show_logs
        self.default_timeout = default_timeout
        self.checkpointer_factory = checkpointer_factory or (lambda job_id: LogCheckpointer(store, job_id))
        self.popen = popen
        self.run = run

    def build_env(self, inventory):
        env = dict(os.environ)
        env.update(ANSIBLE_ENV)
        env["ANSIBLE_INVENTORY"] = inventory
        env.pop("ANSIBLE_NOCOLOR", None)
        return env

    def build_command(self, job_id, playbook, extra_vars_file, inventory, vault_pass_file):
        return [
            "ansible-playbook", playbook,
            "-e", f"@{extra_vars_file}",
            "-e", f"scan_id={job_id}",
            "-i", inventory,
            "--forks", "10",
            "--vault-password-file", vault_pass_file,
        ]

    def syntax_check(self, playbook):
        playbook = self.resolve(playbook)
        result = self.run(
            ["ansible-playbook", "--syntax-check", playbook],
            cwd=self.base_path,
            env=self.build_env(os.path.join(self.base_path, "inventory")),
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            return False, (result.stderr or result.stdout or "").strip()
        return True, ""

    def run_playbook(self, job_id, playbook, extra_vars_file, inventory, log_dir, vault_secret, timeout=None):
        if not os.path.isdir(self.base_path):
            raise ExecutionError(f"ansible base path {self.base_path} does not exist")
        playbook = self.resolve(playbook)
        extra_vars_file = self.resolve(extra_vars_file)
        inventory = self.resolve(inventory)
        log_dir = self.resolve(log_dir)
        os.makedirs(log_dir, exist_ok=True)
        if timeout is None:
            timeout = self.default_timeout

        checkpointer = self.checkpointer_factory(job_id)
        stderr_lines = []
        try:
            with secret_file(os.path.join(log_dir, ".vault_pass"), vault_secret) as vault_pass_file:
                cmd = self.build_command(job_id, playbook, extra_vars_file, inventory, vault_pass_file)
                logging.info(f"[job_id={job_id}] Running {os.path.basename(playbook)}")
                with open(os.path.join(log_dir, "ansible.log"), "ab") as log_file:
                    proc = self.popen(
                        cmd,
                        cwd=self.base_path,
                        env=self.build_env(inventory),
                        stdout=subprocess.PIPE,
                        stderr=subprocess.PIPE,
                    )
                    file_lock = threading.Lock()
                    pumps = [
                        threading.Thread(target=self._pump, args=(proc.stdout, STDOUT, log_file, file_lock, checkpointer, None), daemon=True),
                        threading.Thread(target=self._pump, args=(proc.stderr, STDERR, log_file, file_lock, checkpointer, stderr_lines), daemon=True),
                    ]
                    checkpointer.start()
                    for pump in pumps:
                        pump.start()
                    try:
                        returncode = proc.wait(timeout=timeout or None)
                    except subprocess.TimeoutExpired:
                        proc.kill()
                        proc.wait()
                        for pump in pumps:
                            pump.join()
                        raise ExecutionError(
                            f"{os.path.basename(playbook)} exceeded the {timeout}s deadline",
                            stderr=b"".join(stderr_lines).decode("utf-8", errors="replace"),
                        )
                    for pump in pumps:
                        pump.join()
        finally:
            checkpointer.close()

        stderr_text = b"".join(stderr_lines).decode("utf-8", errors="replace")
        if returncode != 0:
            logging.error(f"[job_id={job_id}] {os.path.basename(playbook)} exited with {returncode}")
            raise ExecutionError(
                f"{os.path.basename(playbook)} failed with exit code {returncode}",
                returncode=returncode,
                stderr=stderr_text,
            )
        logging.info(f"[job_id={job_id}] {os.path.basename(playbook)} completed")

    def _pump(self, pipe, stream, log_file, file_lock, checkpointer, capture):
        mirror = sys.stderr if stream == STDERR else sys.stdout
        for chunk in iter(pipe.readline, b""):
            with file_lock:
                log_file.write(chunk)
                log_file.flush()
            checkpointer.write(chunk, stream)
            if capture is not None:
                capture.append(chunk)
            if self.show_logs:
                mirror.write(chunk.decode("utf-8", errors="replace"))
                mirror.flush()
        pipe.close()
