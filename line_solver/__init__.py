"""LineRT — Line Solver Package.

Monte-Carlo photon transport, statistical equilibrium and the
Gauss-Jacobi convergence scheduler that iterates the level populations.
"""
