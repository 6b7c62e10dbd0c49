from stockledger.models.inventory import InventoryBatch, InventoryItem
from stockledger.models.audit_log import BatchAuditLog
