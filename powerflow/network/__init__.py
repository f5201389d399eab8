"""Network model, admittance assembly, topology checks and post-solve analysis."""
