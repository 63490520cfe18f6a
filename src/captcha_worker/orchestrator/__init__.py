"""Solver process orchestration for human-in-the-loop captcha solving.

The solver is an external executable speaking line-delimited JSON on
stdin/stdout. This package owns the integration boundary with it:

- Spawning, supervising and stopping one long-lived solver per session.
- Classifying each output line as a status, a task or noise.
- The request -> present -> solve -> submit cycle, paced entirely by
  solver acknowledgments instead of timers.
- Credential validation through a short-lived solver run or an HTTP service.
"""
