"""
Tests for the physical BSDF models

- Fresnel reference values for dielectrics and conductors
- Thin-film anti-reflection behaviour
- Anisotropic GGX distribution, reciprocity and frame invariance
- Dipole subsurface profile and total diffuse reflectance
- Layered composition and the model factory
"""

import math

import pytest
import torch

from hybrid_bsdf.bsdf_core import DTYPE, BSDFContext, ContextBatch
from hybrid_bsdf.bsdf_models import (
    GGX,
    AnisotropicGGXBSDF,
    ConductorBSDF,
    DielectricBSDF,
    Fresnel,
    LambertianBSDF,
    LayeredBSDF,
    SubsurfaceBSDF,
    ThinFilmBSDF,
    create_bsdf,
    select_bsdf_model,
)
from hybrid_bsdf.material_parameters import METAL_PRESETS, SUBSURFACE_PRESETS, clamp_roughness


ALL_MODELS = [
    DielectricBSDF(ior=1.5),
    DielectricBSDF.from_preset("flint_glass"),
    DielectricBSDF(ior=1.5, absorption_coefficient=0.5, thickness=2.0),
    ConductorBSDF(n=0.22, k=2.9),
    ConductorBSDF.from_preset("gold"),
    ThinFilmBSDF.quarter_wave_coating(),
    ThinFilmBSDF.soap_bubble(),
    ThinFilmBSDF.single_layer(2.0, 300.0, substrate_ior=0.5, substrate_k=3.0),
    AnisotropicGGXBSDF(alpha_x=0.1, alpha_y=0.5),
    AnisotropicGGXBSDF(alpha_x=0.2, alpha_y=0.2, ior=0.2, k=3.0),
    SubsurfaceBSDF.from_preset("skin"),
    SubsurfaceBSDF(thickness=1.0),
    LambertianBSDF(0.7),
    LayeredBSDF.clearcoat(ConductorBSDF.from_preset("gold")),
]


def _cos(*values):
    return torch.tensor(values, dtype=DTYPE)


class TestDielectric:

    def test_normal_incidence_glass(self):
        response = DielectricBSDF(ior=1.5).evaluate(BSDFContext.from_cosine(1.0))
        assert response.reflectance == pytest.approx(0.04, abs=1e-12)
        assert response.transmittance == pytest.approx(0.96, abs=1e-12)
        assert response.absorption == pytest.approx(0.0, abs=1e-12)

    def test_reflectance_is_monotonic_in_angle(self):
        bsdf = DielectricBSDF(ior=1.5)
        responses = bsdf.evaluate_many([BSDFContext.from_angle(a) for a in range(0, 90)])
        R = [r.reflectance for r in responses]
        for a, (r0, r1) in enumerate(zip(R, R[1:])):
            assert r1 >= r0 - 1e-12, f"Reflectance dropped between {a} and {a + 1} degrees"

    def test_total_internal_reflection(self):
        bsdf = DielectricBSDF(ior=1.0 / 1.5)
        response = bsdf.evaluate(BSDFContext.from_angle(60.0))
        assert response.reflectance == pytest.approx(1.0)
        assert response.transmittance == pytest.approx(0.0, abs=1e-12)

    def test_beer_lambert_absorption(self):
        bsdf = DielectricBSDF(ior=1.5, absorption_coefficient=0.5, thickness=1.0)
        response = bsdf.evaluate(BSDFContext.from_cosine(1.0))
        assert response.reflectance == pytest.approx(0.04, abs=1e-12)
        assert response.transmittance == pytest.approx(0.96 * math.exp(-0.5), abs=1e-9)
        assert response.absorption == pytest.approx(1.0 - 0.04 - 0.96 * math.exp(-0.5), abs=1e-9)

    def test_dispersion(self):
        bsdf = DielectricBSDF.from_preset("crown_glass")
        rgb = bsdf.evaluate_rgb(1.0)
        assert rgb["b"].reflectance > rgb["g"].reflectance > rgb["r"].reflectance

    def test_invalid_ior(self):
        with pytest.raises(ValueError):
            DielectricBSDF(ior=0.0)

    def test_unknown_preset(self):
        with pytest.raises(ValueError):
            DielectricBSDF.from_preset("unobtainium")


class TestConductor:

    def test_normal_incidence_matches_closed_form(self):
        n, k = 0.22, 2.9
        expected = ((n - 1.0) ** 2 + k ** 2) / ((n + 1.0) ** 2 + k ** 2)
        response = ConductorBSDF(n=n, k=k).evaluate(BSDFContext.from_cosine(1.0))
        assert response.reflectance == pytest.approx(expected, abs=1e-9)
        assert response.reflectance == pytest.approx(0.911, abs=1e-3)
        assert response.transmittance == 0.0
        assert response.absorption == pytest.approx(1.0 - expected, abs=1e-9)

    def test_grazing_incidence(self):
        R = Fresnel.conductor(_cos(0.0), 0.22, 2.9)
        assert R.item() == pytest.approx(1.0, abs=1e-9)

    @pytest.mark.parametrize("name", sorted(METAL_PRESETS))
    def test_presets_are_reflective_and_opaque(self, name):
        bsdf = ConductorBSDF.from_preset(name)
        for channel, response in bsdf.evaluate_rgb(1.0).items():
            assert 0.3 < response.reflectance < 1.0, f"{name} {channel}: R={response.reflectance}"
            assert response.transmittance == 0.0

    def test_gold_is_yellow(self):
        rgb = ConductorBSDF.from_preset("gold").evaluate_rgb(1.0)
        assert rgb["r"].reflectance > rgb["b"].reflectance


class TestThinFilm:

    def test_quarter_wave_coating_reduces_reflection(self):
        bare = DielectricBSDF(ior=1.5).evaluate(BSDFContext.from_cosine(1.0))
        coated = ThinFilmBSDF.quarter_wave_coating(1.38, 1.5, 550.0).evaluate(BSDFContext.from_cosine(1.0))
        assert coated.reflectance < 0.02
        assert coated.reflectance < bare.reflectance
        assert coated.reflectance == pytest.approx(0.0141, abs=5e-4)
        assert coated.absorption == pytest.approx(0.0, abs=1e-9)

    def test_zero_thickness_layer_is_bare_substrate(self):
        film = ThinFilmBSDF(layers=((1.38, 0.0),), substrate_ior=1.5)
        response = film.evaluate(BSDFContext.from_cosine(1.0))
        assert response.reflectance == pytest.approx(0.04, abs=1e-9)

    def test_coating_is_wavelength_selective(self):
        film = ThinFilmBSDF.quarter_wave_coating()
        wavelengths, R, _, _ = film.evaluate_spectral(1.0, torch.tensor([400.0, 550.0, 700.0]))
        assert R[1] < R[0]
        assert R[1] < R[2]

    def test_absorbing_substrate_blocks_transmission(self):
        film = ThinFilmBSDF.single_layer(1.38, 100.0, substrate_ior=0.2, substrate_k=3.0)
        response = film.evaluate(BSDFContext.from_angle(30.0))
        assert response.transmittance == 0.0
        assert response.is_energy_conserving()

    def test_invalid_layer(self):
        with pytest.raises(ValueError):
            ThinFilmBSDF(layers=((1.38, -10.0),))
        with pytest.raises(ValueError):
            ThinFilmBSDF(layers=())


class TestAnisotropicGGX:

    def test_isotropic_distribution_closed_form(self):
        alpha = 0.4
        generator = torch.Generator().manual_seed(1)
        h = torch.rand(64, 3, generator=generator, dtype=DTYPE) - 0.5
        h[:, 2] = h[:, 2].abs() + 0.1
        h = h / h.norm(dim=-1, keepdim=True)
        D = GGX.distribution(h, alpha, alpha)
        cos2 = h[:, 2] ** 2
        expected = alpha ** 2 / (math.pi * (cos2 * (alpha ** 2 - 1.0) + 1.0) ** 2)
        assert torch.allclose(D, expected, rtol=1e-10)

    def test_normal_incidence_reflectance(self):
        """D G F / (4 cos cos) at normal incidence reduces to F / (4 alpha^2) after pi * cos weighting"""
        bsdf = AnisotropicGGXBSDF(alpha_x=0.5, alpha_y=0.5, ior=1.5)
        response = bsdf.evaluate(BSDFContext.from_cosine(1.0))
        assert response.reflectance == pytest.approx(0.04, abs=1e-9)

    def test_brdf_is_reciprocal(self):
        bsdf = AnisotropicGGXBSDF(alpha_x=0.1, alpha_y=0.6)
        contexts = [
            BSDFContext.from_angles(ti, to, phi)
            for ti in (5.0, 35.0, 70.0)
            for to in (10.0, 45.0, 80.0)
            for phi in (0.0, 60.0, 135.0, 180.0)
        ]
        batch = ContextBatch.from_contexts(contexts)
        forward = bsdf.brdf(batch)
        reverse = bsdf.brdf(batch.swapped())
        assert torch.allclose(forward, reverse, rtol=1e-10, atol=1e-12)

    def test_isotropic_is_invariant_to_tangent_frame(self):
        bsdf = AnisotropicGGXBSDF(alpha_x=0.3, alpha_y=0.3)
        assert bsdf.is_isotropic
        default = BSDFContext.from_angles(40.0, 30.0, 120.0)
        rotated = BSDFContext(
            wi=default.wi, wo=default.wo, tangent=(0.0, 1.0, 0.0), bitangent=(1.0, 0.0, 0.0))
        a = bsdf.evaluate(default)
        b = bsdf.evaluate(rotated)
        assert a.reflectance == pytest.approx(b.reflectance, rel=1e-10)

    def test_swapping_alphas_and_frame(self):
        """alpha_x along the tangent is equivalent to alpha_y along a swapped tangent"""
        ctx = BSDFContext.from_angles(40.0, 30.0, 120.0)
        swapped_frame = BSDFContext(wi=ctx.wi, wo=ctx.wo, tangent=(0.0, 1.0, 0.0), bitangent=(1.0, 0.0, 0.0))
        a = AnisotropicGGXBSDF(alpha_x=0.1, alpha_y=0.5).evaluate(ctx)
        b = AnisotropicGGXBSDF(alpha_x=0.5, alpha_y=0.1).evaluate(swapped_frame)
        assert a.reflectance == pytest.approx(b.reflectance, rel=1e-10)
        c = AnisotropicGGXBSDF(alpha_x=0.5, alpha_y=0.1).evaluate(ctx)
        assert c.reflectance != pytest.approx(a.reflectance, rel=1e-3)

    def test_alpha_clamped(self):
        bsdf = AnisotropicGGXBSDF(alpha_x=0.0, alpha_y=5.0)
        assert bsdf.params.alpha_x == 0.001
        assert bsdf.params.alpha_y == 1.0

    def test_from_roughness(self):
        bsdf = AnisotropicGGXBSDF.from_roughness(0.5, anisotropy=0.8)
        assert bsdf.params.alpha_x > bsdf.params.alpha_y
        assert AnisotropicGGXBSDF.from_roughness(0.5).is_isotropic

    def test_metallic_has_no_transmission(self):
        bsdf = AnisotropicGGXBSDF(alpha_x=0.2, alpha_y=0.4, ior=0.2, k=3.0)
        response = bsdf.evaluate(BSDFContext.from_angle(30.0))
        assert response.transmittance == 0.0


class TestSubsurface:

    @pytest.mark.parametrize("name", sorted(SUBSURFACE_PRESETS))
    def test_total_diffuse_reflectance_in_range(self, name):
        bsdf = SubsurfaceBSDF.from_preset(name)
        Rd = bsdf.total_diffuse_reflectance(torch.tensor([450.0, 550.0, 650.0]))
        assert bool(((Rd > 0.0) & (Rd < 1.0)).all()), f"{name}: Rd={Rd.tolist()}"

    def test_profile_decreases_with_distance(self):
        bsdf = SubsurfaceBSDF.from_preset("skin")
        profile = bsdf.diffuse_profile(torch.linspace(0.0, 20.0, 41))
        assert bool((profile > 0.0).all())
        assert bool((profile[1:] <= profile[:-1]).all())

    def test_profile_integrates_to_total(self):
        bsdf = SubsurfaceBSDF.from_preset("skin")
        r = torch.linspace(0.0, 150.0, 150001, dtype=DTYPE)
        profile = bsdf.diffuse_profile(r, 550.0)
        integral = torch.trapezoid(2.0 * math.pi * r * profile, r)
        total = bsdf.total_diffuse_reflectance(550.0)[0]
        assert integral.item() == pytest.approx(total.item(), rel=1e-3)

    def test_less_absorption_reflects_more(self):
        absorbing = SubsurfaceBSDF(sigma_a=1.0, sigma_s=1.0)
        scattering = SubsurfaceBSDF(sigma_a=0.01, sigma_s=1.0)
        assert scattering.total_diffuse_reflectance(550.0) > absorbing.total_diffuse_reflectance(550.0)

    def test_slab_transmits(self):
        semi_infinite = SubsurfaceBSDF(thickness=0.0).evaluate(BSDFContext.from_cosine(1.0))
        slab = SubsurfaceBSDF(thickness=0.5).evaluate(BSDFContext.from_cosine(1.0))
        assert semi_infinite.transmittance == 0.0
        assert slab.transmittance > 0.0

    def test_diffuse_lobe_is_reciprocal(self):
        bsdf = SubsurfaceBSDF.from_preset("marble")
        batch = ContextBatch.from_contexts([BSDFContext.from_angles(20.0, 70.0, 45.0, 600.0)])
        forward = bsdf.reciprocity_value(batch)
        reverse = bsdf.reciprocity_value(batch.swapped())
        assert torch.allclose(forward, reverse, rtol=1e-12)

    def test_phase_asymmetry_clamped(self):
        assert SubsurfaceBSDF(g=1.0).params.g == 0.99


class TestLayered:

    def test_adding_formula(self):
        layered = LayeredBSDF([DielectricBSDF(ior=1.5), LambertianBSDF(0.5)])
        response = layered.evaluate(BSDFContext.from_cosine(1.0))
        expected = 0.04 + 0.96 ** 2 * 0.5 / (1.0 - 0.04 * 0.5)
        assert response.reflectance == pytest.approx(expected, abs=1e-9)
        assert response.transmittance == pytest.approx(0.0, abs=1e-12)
        assert response.is_energy_conserving()

    def test_single_layer_matches_child(self):
        child = ConductorBSDF.from_preset("copper")
        layered = LayeredBSDF([child])
        ctx = BSDFContext.from_angle(45.0, 600.0)
        assert layered.evaluate(ctx).reflectance == pytest.approx(child.evaluate(ctx).reflectance, abs=1e-12)

    def test_clearcoat_over_gold(self):
        gold = ConductorBSDF.from_preset("gold")
        coat = DielectricBSDF(ior=1.4)
        coated = LayeredBSDF.clearcoat(gold, ior=1.4)
        ctx = BSDFContext.from_cosine(1.0, 650.0)
        result = coated.evaluate(ctx)
        coat_fresnel = ((1.4 - 1.0) / (1.4 + 1.0)) ** 2
        assert result.transmittance == pytest.approx(0.0, abs=1e-12)
        assert result.reflectance > coat_fresnel
        assert result.is_energy_conserving()

        # A lossless coat adds R1 (1 - R2)^2 / (1 - R1 R2) >= 0 over the bare
        # base and stays below R1 + T1 R2
        for angle in (0.0, 30.0, 60.0, 80.0):
            for wavelength in (450.0, 550.0, 650.0):
                ctx = BSDFContext.from_angle(angle, wavelength)
                R2 = gold.evaluate(ctx).reflectance
                top = coat.evaluate(ctx)
                R = coated.evaluate(ctx).reflectance
                upper = top.reflectance + top.transmittance * R2
                assert R2 - 1e-12 <= R <= upper + 1e-12, f"{angle} deg, {wavelength} nm: R={R}"

    def test_features_and_memory(self):
        layered = LayeredBSDF.clearcoat(ConductorBSDF(n=0.2, k=3.0))
        assert layered.material_features()["k"] == pytest.approx(3.0)
        assert layered.memory_bytes() == sum(layer.memory_bytes() for layer in layered.layers)

    def test_empty_stack_rejected(self):
        with pytest.raises(ValueError):
            LayeredBSDF([])


class TestRoughness:

    def test_clamp_roughness(self):
        assert clamp_roughness(-0.5) == 0.0
        assert clamp_roughness(1.7) == 1.0
        assert clamp_roughness(float("nan")) == 0.0
        assert clamp_roughness(0.25) == 0.25

    def test_roughness_reaches_features(self):
        assert DielectricBSDF(roughness=0.3).material_features()["roughness"] == pytest.approx(0.3)
        assert DielectricBSDF.from_preset("frosted_glass").material_features()["roughness"] == pytest.approx(0.3)
        assert ConductorBSDF.brushed_metal().material_features()["roughness"] == pytest.approx(0.15)
        assert ConductorBSDF.from_preset("gold", roughness=0.4).material_features()["roughness"] == pytest.approx(0.4)
        film = ThinFilmBSDF.quarter_wave_coating().with_roughness(0.5)
        assert film.material_features()["roughness"] == pytest.approx(0.5)
        assert ThinFilmBSDF.quarter_wave_coating().material_features()["roughness"] == 0.0
        assert DielectricBSDF(roughness=2.0).params.roughness == 1.0

    def test_rough_dielectric(self):
        response = DielectricBSDF(ior=1.5, roughness=0.3).evaluate(BSDFContext.from_cosine(1.0))
        assert response.reflectance == pytest.approx(0.04 * 0.7 + 0.05 * 0.3, abs=1e-12)
        assert response.transmittance == pytest.approx(1.0 - response.reflectance, abs=1e-12)

    def test_rough_conductor_loses_specular_energy(self):
        ctx = BSDFContext.from_angle(20.0)
        smooth = ConductorBSDF(n=0.22, k=2.9).evaluate(ctx)
        rough = ConductorBSDF(n=0.22, k=2.9, roughness=0.5).evaluate(ctx)
        assert rough.reflectance == pytest.approx(smooth.reflectance * (1.0 - 0.4 * 0.5), abs=1e-12)
        assert rough.transmittance == 0.0
        assert rough.is_energy_conserving()

    def test_rough_thin_film(self):
        ctx = BSDFContext.from_angle(30.0)
        smooth = ThinFilmBSDF.soap_bubble().evaluate(ctx)
        rough = ThinFilmBSDF.soap_bubble().with_roughness(0.5).evaluate(ctx)
        assert rough.reflectance < smooth.reflectance
        assert rough.transmittance >= smooth.transmittance
        assert rough.is_energy_conserving()


class TestSampling:

    @pytest.mark.parametrize("bsdf, expected", [
        (DielectricBSDF(), True),
        (DielectricBSDF.frosted_glass(), False),
        (ConductorBSDF.from_preset("silver"), True),
        (ConductorBSDF.brushed_metal(), False),
        (ThinFilmBSDF.quarter_wave_coating(), True),
        (ThinFilmBSDF.quarter_wave_coating().with_roughness(0.2), False),
        (AnisotropicGGXBSDF(), False),
        (LambertianBSDF(), False),
        (SubsurfaceBSDF(), False),
        (LayeredBSDF.clearcoat(ConductorBSDF.from_preset("gold")), True),
        (LayeredBSDF.clearcoat(LambertianBSDF()), False),
    ], ids=repr)
    def test_is_delta(self, bsdf, expected):
        assert bsdf.is_delta() is expected

    def test_smooth_dielectric_chooses_lobe_by_fresnel(self):
        bsdf = DielectricBSDF(ior=1.5)
        ctx = BSDFContext.from_cosine(1.0)

        reflected = bsdf.sample(ctx, 0.01, 0.5)
        assert reflected.is_delta
        assert reflected.pdf == pytest.approx(0.04, abs=1e-12)
        assert reflected.wo == pytest.approx((0.0, 0.0, 1.0))
        assert reflected.value.reflectance == pytest.approx(0.04, abs=1e-12)
        assert reflected.value.transmittance == 0.0

        transmitted = bsdf.sample(ctx, 0.5, 0.5)
        assert transmitted.is_delta
        assert transmitted.pdf == pytest.approx(0.96, abs=1e-12)
        assert transmitted.wo == pytest.approx((0.0, 0.0, -1.0))
        assert transmitted.value.transmittance == pytest.approx(0.96, abs=1e-12)
        assert bsdf.pdf(ctx) == 0.0

    def test_refraction_follows_snell(self):
        ctx = BSDFContext.from_angle(45.0)
        wo = DielectricBSDF(ior=1.5).sample(ctx, 0.99, 0.0).wo
        assert wo[2] < 0.0
        assert math.sqrt(wo[0] ** 2 + wo[1] ** 2) == pytest.approx(math.sin(math.radians(45.0)) / 1.5, abs=1e-12)
        assert sum(c * c for c in wo) == pytest.approx(1.0, abs=1e-12)

    def test_total_internal_reflection_always_reflects(self):
        sample = DielectricBSDF(ior=1.0 / 1.5).sample(BSDFContext.from_angle(60.0), 0.999, 0.0)
        assert sample.pdf == pytest.approx(1.0)
        assert sample.wo[2] > 0.0

    def test_conductor_always_reflects(self):
        ctx = BSDFContext.from_angle(30.0)
        for u1 in (0.0, 0.5, 0.999999):
            sample = ConductorBSDF.from_preset("gold").sample(ctx, u1, 0.3)
            assert sample.is_delta
            assert sample.pdf == 1.0
            assert sample.wo == pytest.approx((-math.sin(math.radians(30.0)), 0.0, math.cos(math.radians(30.0))))

    @pytest.mark.parametrize("bsdf", [
        LambertianBSDF(0.6), AnisotropicGGXBSDF(alpha_x=0.3, alpha_y=0.3), DielectricBSDF.frosted_glass(),
    ], ids=repr)
    def test_cosine_sampling(self, bsdf):
        ctx = BSDFContext.from_angle(40.0)
        for u1, u2 in ((0.1, 0.2), (0.5, 0.9), (0.95, 0.4)):
            sample = bsdf.sample(ctx, u1, u2)
            assert not sample.is_delta
            assert sample.wo[2] > 0.0
            assert sample.pdf == pytest.approx(bsdf.pdf(BSDFContext(wi=ctx.wi, wo=sample.wo)), rel=1e-9)
            assert sample.value.is_energy_conserving()

    def test_invalid_random_numbers_are_sanitized(self):
        sample = LambertianBSDF().sample(BSDFContext.from_angle(10.0), float("nan"), 7.0)
        assert sample.pdf == pytest.approx(1.0 / math.pi)
        assert sample.wo == pytest.approx((0.0, 0.0, 1.0))

    @pytest.mark.parametrize("bsdf", [LambertianBSDF(), ConductorBSDF.brushed_metal()], ids=repr)
    def test_pdf_integrates_to_one(self, bsdf):
        n_theta, n_phi = 90, 8
        d_theta = 0.5 * math.pi / n_theta
        d_phi = 2.0 * math.pi / n_phi
        total = 0.0
        for i in range(n_theta):
            theta = (i + 0.5) * d_theta
            for j in range(n_phi):
                phi = (j + 0.5) * d_phi
                ctx = BSDFContext.from_angles(30.0, math.degrees(theta), math.degrees(phi))
                total += bsdf.pdf(ctx) * math.sin(theta) * d_theta * d_phi
        assert total == pytest.approx(1.0, abs=1e-3)


@pytest.mark.parametrize("bsdf", ALL_MODELS, ids=lambda b: type(b).__name__)
def test_energy_conservation(bsdf):
    passed, deviation = bsdf.validate_energy_conservation(tolerance=1e-9)
    assert passed, f"{bsdf!r}: max deviation {deviation:.3e}"
    _, R, T, A = bsdf.evaluate_spectral(0.5)
    for name, values in (("R", R), ("T", T), ("A", A)):
        assert bool(((values >= 0.0) & (values <= 1.0)).all()), f"{bsdf!r}: {name} out of range"


@pytest.mark.parametrize("bsdf", ALL_MODELS, ids=lambda b: type(b).__name__)
def test_invalid_contexts_never_raise(bsdf):
    contexts = [
        BSDFContext.from_angle(float("nan"), float("nan")),
        BSDFContext.from_angle(95.0, -10.0),
        BSDFContext(wi=(0.0, 0.0, -1.0), wo=(1.0, 0.0, 0.0), wavelength=5000.0),
    ]
    for response in bsdf.evaluate_many(contexts):
        assert response.is_energy_conserving()


def test_factory():
    bsdf = create_bsdf("conductor", n=0.22, k=2.9)
    assert isinstance(bsdf, ConductorBSDF)
    assert select_bsdf_model("thin_film") is ThinFilmBSDF
    with pytest.raises(ValueError):
        select_bsdf_model("plastic")


def test_memory_bytes():
    assert DielectricBSDF().memory_bytes() == 5 * 8
    assert ConductorBSDF().memory_bytes() == 7 * 8
