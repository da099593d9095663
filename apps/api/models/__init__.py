"""Models package."""

from .tenant_namespace import TenantNamespace
from .table_metadata import TableMetadata
from .storage_quota import StorageQuota
from .upload_session import UploadSession
from .etl_operation import EtlOperation
