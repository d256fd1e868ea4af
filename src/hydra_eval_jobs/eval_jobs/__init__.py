"""Concurrent orchestration of job tree evaluation.

A driver runs a fixed pool of handler loops. Each loop owns one worker
process hosting one evaluator and talks to it over a pair of pipes with a
line protocol (see ``protocol``). Loops claim attribute paths from a shared
frontier and fold the answers back into it; children become claimable only
once their parent has been folded, so the tree is discovered while it is
consumed. A worker that outgrows its memory ceiling announces a restart after
its reply and the loop replaces it with a fresh process.
"""
