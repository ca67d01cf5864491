"""Tiered memory — records, the tier store protocol, and its backends.

Tiers and their collections:
    journal  → journal_entries    raw private entries (content, emotional markers)
    persona  → persona_memory     review candidates + promoted persona memories
    public   → public_knowledge   approved, guardrailed knowledge

Records never move between tiers. Promotion creates a new persona record and
leaves the journal entry untouched.
"""
