"""Scenario orchestration core for behavior-driven UI and API tests.

The `pytest_world` package binds human-readable scenario steps to
executable interaction code against a web UI and an HTTP API.

Key features:
- a per-scenario context ("world") owning driver and client handles;
- an ordered, tag-filtered hook pipeline with failure-capture;
- page objects and API clients behind one interaction contract;
- a single cancellable wait/retry engine for every blocking call;
- a structured result stream for external report renderers.

Gherkin parsing, report rendering and log sinks are external collaborators;
the package only exposes narrow interfaces towards them.
"""
