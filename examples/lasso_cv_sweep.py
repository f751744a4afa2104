"""Plot fitting and validation errors of an L1 sweep for noisy cubic spring forces."""

import numpy as np
import matplotlib.pyplot as plt

from ifcfit.core import FitSession
from ifcfit.modeling import FitConfig, LassoConfig
from ifcfit.models import (
    SpringParams,
    build_symmetry,
    enumerate_clusters,
    harmonic_force_constants,
    harmonic_forces,
    random_displacements,
    simple_cubic,
)


crystal = simple_cubic(supercell=(4, 4, 4))
symmetry = build_symmetry(crystal)
clusters = [enumerate_clusters(crystal, 0, 1.5)]
phi = harmonic_force_constants(crystal, SpringParams(longitudinal=1.0, transverse=0.1, cutoff=1.1))

rng = np.random.default_rng(3)
u = random_displacements(crystal.nat, 4, amplitude=0.01, seed=0)
f = harmonic_forces(phi, u) + 1e-4 * rng.standard_normal(u.shape)
ut = random_displacements(crystal.nat, 2, amplitude=0.01, seed=1)
ft = harmonic_forces(phi, ut) + 1e-4 * rng.standard_normal(ut.shape)

lasso = LassoConfig(cross_validation=True, l1_alpha_min=1e-7, l1_alpha_max=1e-2, num_l1_alpha=30)
session = FitSession(symmetry, clusters, FitConfig(solver="lasso"), lasso_config=lasso).build()
result = session.fit(u, f, validation=(ut, ft))
path = result.path

plt.loglog(path.alphas, path.fitting_errors, label="fitting")
plt.loglog(path.alphas, path.validation_errors, label="validation")
plt.xlabel(r"L1 $\alpha$")
plt.ylabel("Relative force error")
plt.title("Cubic springs: second-neighbor terms vanish at the optimum")
plt.grid(alpha=0.3)
plt.legend()
plt.tight_layout()
plt.show()
