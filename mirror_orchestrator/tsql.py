"""T-SQL quoting helpers"""


def quote_name(name: str) -> str:
    """Bracket-quote an identifier, same as QUOTENAME()"""
    return "[" + name.replace("]", "]]") + "]"


def quote_string(value: str) -> str:
    """N'...' literal with embedded quotes doubled"""
    return "N'" + value.replace("'", "''") + "'"
