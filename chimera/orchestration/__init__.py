"""
Orchestration Package

Intent analysis, classification, planning and the phase state machine that drives
execution modes across model backends. Import concrete components from their modules;
this package keeps no re-exports so submodules can depend on each other freely.
"""
