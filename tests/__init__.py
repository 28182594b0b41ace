"""
ArchGraph Test Package

TEST AXIOMS:
=============
1. Determinism: same canonical relations = same roll-ups and query output
2. Gate authority: nothing reaches canonical relations without approval
3. Generation isolation: a pinned query never sees another generation
4. Explicit failure: every error surfaces as a reason code
"""
