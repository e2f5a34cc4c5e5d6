"""
Directory Operations Engine

Duplicate detection, transactional merging and staged bulk operations with
snapshot rollback for a business directory back office.
"""

__version__ = "1.0.0"
__title__ = "directory-ops"
