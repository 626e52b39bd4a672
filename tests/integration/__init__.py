"""
Integration tests for itharness.

These tests launch real processes:
- The fake router (FastAPI served by uvicorn) from tests/fixtures
- The fake capability worker, a plain TCP listener that registers itself
- Nested pytest runs that load the itharness plugin

Test modules:
- test_stack.py: SuiteScope/TestScope lifecycles, clients, log layout
- test_plugin.py: Fixtures and the requires marker through pytester

Running integration tests:
    pytest -m integration
    pytest tests/integration/ -v
"""
