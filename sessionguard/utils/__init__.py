"""Shared utilities: resilience wrappers and async/time helpers"""
