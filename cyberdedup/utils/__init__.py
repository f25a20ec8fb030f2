# -*- coding: utf-8 -*-
"""
Utilities package shared across the resolution pipeline.

Contains dataclasses, configuration, the error hierarchy, ID generators,
logging setup, JSON/JSONL helpers and the API rate limiter.
"""
