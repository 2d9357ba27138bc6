"""
History reporting: month windows, event reconstruction from relation rows,
and CSV export.
"""
