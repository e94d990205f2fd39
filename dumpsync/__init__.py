"""dumpsync: scheduled import of remote database dumps."""

__version__ = "1.0.0"
