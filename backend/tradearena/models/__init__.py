from tradearena.models.contest import Contest, Participation
from tradearena.models.trade import Trade
from tradearena.models.wallet import VirtualWallet, WalletAccount, WalletLedgerEntry

__all__ = [
    "Contest",
    "Participation",
    "Trade",
    "VirtualWallet",
    "WalletAccount",
    "WalletLedgerEntry",
]
