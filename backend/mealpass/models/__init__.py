from .members import Member
from .packages import MemberPackage, PackageDisabledDay, PackageHistory
from .ledger import BalanceTransaction, MealConsumption

__all__ = [
    'Member',
    'MemberPackage', 'PackageDisabledDay', 'PackageHistory',
    'BalanceTransaction', 'MealConsumption',
]
