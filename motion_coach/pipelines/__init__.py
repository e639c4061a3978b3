"""
Real-time coaching pipeline for the Motion Coach service.

Processes a live motion stream through four periodic stages:
    Stage 1: Sampling & intensity smoothing
    Stage 2: Movement classification (hysteretic state + semantic class)
    Stage 3: 30-second rolling aggregation
    Stage 4: Advisory tips (cached / rate-limited) and audio dispatch
"""
