"""Upstream data extractors"""
