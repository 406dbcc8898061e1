"""auth/ -- Authentication core for Passgate.

Credential store, Token Service, MFA step, Session Orchestrator, and the
recovery flow. auth/dependencies.py is the one module that knows about
FastAPI; everything else is framework-free and takes its collaborators
(store, notifier, settings, clock) as constructor arguments.

Layer rule: auth/ imports from core/ and third-party libraries only.
api/ and the CLI import from auth/, not the other way around.
"""
