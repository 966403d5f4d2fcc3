"""
Services: gateways to external systems and per-city state
"""
