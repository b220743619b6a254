"""HTTP service for the supply chain product API"""
