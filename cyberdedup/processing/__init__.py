# -*- coding: utf-8 -*-
"""
Processing package for article resolution.

Contains subpackages: entities (entity extraction and normalization) and dedup
(candidate filtering, similarity scoring, classification, adjudication,
merging, and the run orchestrator).
"""
