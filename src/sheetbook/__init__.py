"""sheetbook -- local-first, file-backed spreadsheet workspace core."""

__version__ = "0.4.0"
