"""Model-based fuzzing of the crowdsale ledger.

Implements state-machine testing with:
  - An independent Reference State and pure command algebra
  - Hypothesis-generated command sequences with shrinking
  - Accept/reject agreement and post-call state checks per command
  - Replay and delta-debugging minimization of saved failures
"""
