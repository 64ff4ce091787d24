"""vulnenrich — versioned enrichment data for vulnerability reports.

This package fetches auxiliary vulnerability data (NVD, EPSS, CISA KEV,
...), stores it as atomically-cutover generations, and attaches it to
vulnerability reports at assembly time.
"""

__version__ = "0.3.0"
