# -*- coding: utf-8 -*-
"""
Cyber news story resolution package.

Decides whether each incoming cyber-security news article is a new story, an
update to a tracked story, or a duplicate: entity extraction, the entity
index, candidate filtering, weighted similarity scoring, classification with
adjudication, and canonical record merging.
"""
