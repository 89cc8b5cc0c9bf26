"""Election API service: ballot ledger, phase control and live sync."""
