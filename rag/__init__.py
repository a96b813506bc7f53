"""
Retrieval-augmented generation components for portal chat.

This module provides question validation and topic detection, retrieval over
a CV's embedded chunks, prompt construction and LLM response generation.
"""
