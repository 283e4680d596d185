"""dnsoverlay package"""
