"""Record normalization, validation and deduplication"""
