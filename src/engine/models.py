# src/engine/models.py
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Numeric, String, Text, JSON
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    # all timestamps are stored as naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class JobStatus(str, enum.Enum):
    CREATED = "Created"
    MANUAL = "Manual"
    GENERATING = "Generating"
    DEPLOYING = "Deploying"
    RUNNING = "Running"
    FINISHED = "Finished"
    FAILED = "Failed"
    STOPPED = "Stopped"
    DESTROYED = "Destroyed"


class Client(Base):
    __tablename__ = 'clients'
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    hidden_name = Column(String, nullable=True)


class Provider(Base):
    __tablename__ = 'providers'
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    provider_type = Column(String, nullable=False)  # digitalocean, aws, s3
    uses = Column(JSON, default=list)  # compute, terraform_storage, scan_storage
    settings = Column(JSON, default=dict)


class ProviderCredential(Base):
    __tablename__ = 'api_keys'
    id = Column(String, primary_key=True, default=new_id)
    provider_id = Column(String, ForeignKey('providers.id'), nullable=False)
    key_type = Column(String, nullable=False)  # access_key, secret_key, api_key
    key = Column(Text, nullable=False)  # AES-GCM ciphertext under the master key
    created_at = Column(DateTime, default=utcnow)


class ScanProfile(Base):
    __tablename__ = 'scan_profiles'
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    vm_size = Column(String, nullable=True)
    vm_provider_id = Column(String, ForeignKey('providers.id'), nullable=True)
    state_bucket_id = Column(String, ForeignKey('providers.id'), nullable=True)
    scan_bucket_id = Column(String, ForeignKey('providers.id'), nullable=True)
    nuclei_profile = Column(JSON, nullable=True)


class TargetSet(Base):
    __tablename__ = 'target_sets'
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=True)
    targets = Column(JSON, nullable=True)


class InteractServer(Base):
    __tablename__ = 'interact_servers'
    id = Column(String, primary_key=True, default=new_id)
    url = Column(String, nullable=True)
    token = Column(String, nullable=True)


class ScanJob(Base):
    __tablename__ = 'scan_jobs'
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=True)
    status = Column(Enum(JobStatus, values_callable=lambda e: [m.value for m in e]), default=JobStatus.CREATED, nullable=False)
    client_id = Column(String, ForeignKey('clients.id'), nullable=True)
    target_set_id = Column(String, ForeignKey('target_sets.id'), nullable=True)
    scan_profile_id = Column(String, ForeignKey('scan_profiles.id'), nullable=True)
    interact_id = Column(String, ForeignKey('interact_servers.id'), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    vm_start_time = Column(DateTime, nullable=True)
    vm_stop_time = Column(DateTime, nullable=True)
    scan_start_time = Column(DateTime, nullable=True)
    scan_stop_time = Column(DateTime, nullable=True)
    cost = Column(Numeric(12, 4), nullable=True)
    vm_size = Column(String, nullable=True)
    destroyed = Column(Boolean, default=False, nullable=False)
    archived = Column(Boolean, default=False, nullable=False)
    ephemeral_secret = Column(String, nullable=True)
    execution_log = Column(JSON, nullable=True)  # versioned blob, see engine/logs.py
    ip_address = Column(String, nullable=True)
    skipped_hosts = Column(JSON, nullable=True)


class ScanArchive(Base):
    __tablename__ = 'scan_archives'
    id = Column(String, primary_key=True, default=new_id)
    job_id = Column(String, ForeignKey('scan_jobs.id'), nullable=False)
    client_id = Column(String, nullable=True)
    provider_id = Column(String, ForeignKey('providers.id'), nullable=False)
    full_path = Column(String, nullable=True)
    small_path = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ImportedResult(Base):
    __tablename__ = 'imported_results'
    id = Column(String, primary_key=True, default=new_id)
    job_id = Column(String, ForeignKey('scan_jobs.id'), nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class ScheduledScan(Base):
    __tablename__ = 'scheduled_scans'
    id = Column(String, primary_key=True, default=new_id)
    scan_id = Column(String, ForeignKey('scan_jobs.id'), nullable=False)  # template job, cloned per run
    frequency = Column(String, nullable=False)
    cron_expression = Column(String, nullable=False)
    schedule_details = Column(JSON, nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True)
    last_run_at = Column(DateTime, nullable=True)
    last_job_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
