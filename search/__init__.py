"""Geospatial facility search with a two-tier response cache"""
