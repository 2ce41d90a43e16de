"""
Banking Module - ingest transactions delivered by a bank-link provider
"""

from packages.domain.banking.bank_link import (
    BankLinkIngestor,
    BankLinkIngestResult,
    NormalizedBankTransaction,
    bank_link_ingestor,
    clean_merchant_name,
)

__all__ = [
    'BankLinkIngestor',
    'BankLinkIngestResult',
    'NormalizedBankTransaction',
    'bank_link_ingestor',
    'clean_merchant_name',
]
