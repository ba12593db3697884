"""
Wire codecs. Pure functions only: no sockets, no clocks beyond fallback ids.
"""
