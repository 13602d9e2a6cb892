CURRENCY_SYMBOLS = {"GBP": "£", "USD": "$", "EUR": "€"}


def format_price(pence: int | None, currency: str | None = "GBP") -> str:
    """Format minor units for display, e.g. 4900 GBP -> '£49.00'."""
    amount = f"{(pence or 0) / 100:.2f}"
    code = (currency or "GBP").upper()
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{symbol}{amount}"
    return f"{amount} {code}"
