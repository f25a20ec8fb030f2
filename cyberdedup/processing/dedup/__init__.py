# -*- coding: utf-8 -*-
"""
Duplicate/update resolution subpackage.

Contains candidate_filter (windowed index retrieval), similarity_scorer
(six-dimension weighted Jaccard), classifier (threshold bands), adjudicator
(LLM judge with timeout and fallback), merge_applier (canonical record
updates) and resolution_processor (orchestrator).
"""
