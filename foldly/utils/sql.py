import sqlalchemy as sa


def decrement(column, amount: int):
    """``column - amount`` clamped at zero, evaluated by the database."""
    return sa.case((column > amount, column - amount), else_=0)
