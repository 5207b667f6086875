"""
apimesh - Adaptive Multi-Provider Selection and Resilience

Routes calls for a logical capability ("weather", "currency", ...) across
interchangeable external providers with health tracking, response quality
scoring, constraint-aware selection and automatic failover.
"""

__version__ = "1.0.0"
__author__ = "apimesh"
