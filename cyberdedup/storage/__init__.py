# -*- coding: utf-8 -*-
"""
Storage subpackage: SQLite-backed entity index, canonical article store,
resolution audit table and run log.
"""
