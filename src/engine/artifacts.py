# src/engine/artifacts.py
"""
On-disk layout of a scan under the ansible base directory:

    <base>/generate.yml
    <base>/scans/<job_id>/scan.yaml
    <base>/scans/<job_id>/targets.json
    <base>/scans/<job_id>/nuclei_profile.yaml
    <base>/scans/<job_id>/inventory/
    <base>/scans/<job_id>/logs/
    <base>/scans/<job_id>/deploy.yml      (written by generate.yml)
    <base>/scans/<job_id>/destroy.yml     (written by generate.yml)
"""
import json
import logging
import os
import shutil

import yaml

from engine.errors import GenerationError


class ScanArtifacts:
    def __init__(self, base_path: str, job_id: str):
        self.base_path = os.path.abspath(base_path)
        self.job_id = job_id

    @property
    def scan_dir(self):
        return os.path.join(self.base_path, "scans", self.job_id)

    @property
    def generate_playbook(self):
        return os.path.join(self.base_path, "generate.yml")

    @property
    def deploy_playbook(self):
        return os.path.join(self.scan_dir, "deploy.yml")

    @property
    def destroy_playbook(self):
        return os.path.join(self.scan_dir, "destroy.yml")

    @property
    def scan_vars(self):
        return os.path.join(self.scan_dir, "scan.yaml")

    @property
    def targets_file(self):
        return os.path.join(self.scan_dir, "targets.json")

    @property
    def profile_file(self):
        return os.path.join(self.scan_dir, "nuclei_profile.yaml")

    @property
    def inventory(self):
        return os.path.join(self.scan_dir, "inventory")

    @property
    def log_dir(self):
        return os.path.join(self.scan_dir, "logs")

    def write(self, scan_vars: str, targets, nuclei_profile) -> None:
        if not targets:
            raise GenerationError(f"scan {self.job_id} has no targets")
        if not nuclei_profile:
            raise GenerationError(f"scan {self.job_id} has no nuclei profile")
        try:
            for directory in (self.scan_dir, self.inventory, self.log_dir):
                os.makedirs(directory, exist_ok=True)
            with open(self.scan_vars, "w") as f:
                f.write(scan_vars)
            os.chmod(self.scan_vars, 0o600)
            with open(self.targets_file, "w") as f:
                json.dump(targets, f)
            with open(self.profile_file, "w") as f:
                yaml.safe_dump(nuclei_profile, f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            raise GenerationError(f"failed to write scan files for {self.job_id}: {e}") from e
        logging.info(f"[job_id={self.job_id}] Wrote scan files to {self.scan_dir}")

    def exists(self) -> bool:
        return os.path.isdir(self.scan_dir)

    def remove(self) -> bool:
        if not self.exists():
            return False
        shutil.rmtree(self.scan_dir)
        logging.info(f"[job_id={self.job_id}] Removed {self.scan_dir}")
        return True
