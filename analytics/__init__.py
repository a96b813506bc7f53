"""
Analytics rollups for interactive CV portals.
"""
