"""Sage engine test suite

Test organization:
- unit/: One module per source module
  - behavior/: metrics, signals, arbiter, safety gate
  - learning/: policy engine, reward, experience and weight stores, learning loop
  - compliance/: consent snapshot, grant and withdraw
  - test_config.py, test_store.py, test_cli.py, test_logging_config.py
- integration/: detect -> decide -> feedback -> nightly against one database

Running tests:
    pytest
    pytest tests/unit/learning/
    pytest tests/integration/
"""
