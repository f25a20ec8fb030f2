# -*- coding: utf-8 -*-
"""
Entity processing subpackage.

Contains entity_extractor, which turns raw upstream article records into
normalized Article records with typed entity and CVE sets.
"""
