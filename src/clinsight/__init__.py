"""
Clinsight: Clinical Similarity Search & Risk Aggregation

Semantic search over clinical records, risk scoring folded from similar
cases, population health analytics and clinical decision support.
"""

__version__ = "0.1.0"
__author__ = "Clinsight Team"
