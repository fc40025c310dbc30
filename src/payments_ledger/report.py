import sys
from decimal import Decimal
from typing import Dict, TextIO

from payments_ledger.models import QUANTUM, ClientAccount

HEADER = "client,available,held,total,locked"


def format_amount(value: Decimal) -> str:
    """Format decimal with exactly 4 fractional digits."""
    return f"{value.quantize(QUANTUM):f}"


def format_row(account: ClientAccount) -> str:
    return (
        f"{account.client_id},"
        f"{format_amount(account.available)},"
        f"{format_amount(account.held)},"
        f"{format_amount(account.total)},"
        f"{str(account.locked).lower()}"
    )


def render_accounts(accounts: Dict[int, ClientAccount], stream: TextIO = sys.stdout) -> None:
    """Write the account table, one row per client ordered by client id."""
    print(HEADER, file=stream)
    for client_id in sorted(accounts.keys()):
        print(format_row(accounts[client_id]), file=stream)
