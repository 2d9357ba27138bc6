"""
Random sampling of eligible users and percentage rollout of segments.
"""
