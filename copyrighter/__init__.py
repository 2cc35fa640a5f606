"""Copy number and genome length correction of microbial community profiles."""

__version__ = "0.1.0"
