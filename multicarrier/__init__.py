"""
Multi-carrier shipping: rate shopping, carrier selection and shipment lifecycle.
"""
__version__ = "1.0.0"
