"""shipping/ -- Carrier boundary: prepaid return labels and shipment tracking.

Layer rule: shipping/ imports only stdlib + core/. It knows nothing about
trade-ins beyond the id it stamps on a label reference.
"""
