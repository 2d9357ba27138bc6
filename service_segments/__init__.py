"""
Segments Service for Segmentator.
"""
