"""
SME Finance Kernel

Multi-tenant backend core for small-business finance:
- Rule-driven expense approval with multi-approver task fan-out
- Transaction categorization with rule and frequency based suggestions
- Organization-scoped category and rule management
- Append-only approval audit history
"""

__version__ = "0.1.0"
