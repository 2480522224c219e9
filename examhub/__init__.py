"""
examhub: Exam Attempt & Entitlement Engine
"""
__version__ = "1.0.0"
