"""
Analysis package: choropleth rendering and the end-to-end map pipeline.
"""
