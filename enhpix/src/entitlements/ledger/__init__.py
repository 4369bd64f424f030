from .manager import CreditLedger

__all__ = ['CreditLedger']
