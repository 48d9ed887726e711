"""
Customers module.

Scope:
- Customer aggregate CRUD (customer + embedded addresses + contact persons)
- Sequential business identifiers (K-NNNN)
- Flat export (JSON / CSV / XLSX)
"""
