import logging
import os
import tempfile
import unittest

from copyrighter.cli import build_parser, main

PREFIX = "k__Bacteria;p__Firmicutes;c__Bacilli;o__Bacillales;f__Bacillaceae"


class TestCli(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        root = logging.getLogger()
        for handler in root.handlers[:]:
            root.removeHandler(handler)
        self.tmp.cleanup()

    def path(self, name):
        return os.path.join(self.tmp.name, name)

    def write(self, name, text):
        with open(self.path(name), "w") as fh:
            fh.write(text)
        return self.path(name)

    def read(self, name):
        with open(self.path(name)) as fh:
            return fh.read()

    def run_cli(self, *argv):
        with self.assertRaises(SystemExit) as ctx:
            main(["--log-level", "WARNING"] + list(argv))
        return ctx.exception.code

    def test_parser_requires_command(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args([])

    def test_combine(self):
        img = self.write("img.tsv",
                         "taxon_oid\tDomain\tStatus\tGenome Name\tPhylum\tClass\tOrder\tFamily\tGenus\tSpecies"
                         "\tGenome Size\tGene Count\t16S rRNA Count\n"
                         "1\tBacteria\tFinished\tB. subtilis 168\tFirmicutes\tBacilli\tBacillales\tBacillaceae"
                         "\tBacillus\tsubtilis\t4215606\t4325\t10\n"
                         "2\tBacteria\tDraft\tB. cereus\tFirmicutes\tBacilli\tBacillales\tBacillaceae"
                         "\tBacillus\tcereus\t5400000\t5500\t13\n")
        img_to_gg = self.write("img_to_gg.tsv", "1\t1001\n")
        gg = self.write("gg.tsv", f"1001\t{PREFIX};g__Bacillus;s__subtilis\n")
        rc = self.run_cli("combine", "--img-metadata", img, "--img-to-gg", img_to_gg, "--gg-taxonomy", gg,
                          "--out", self.path("combined.tsv"))
        self.assertEqual(rc, 0)
        lines = self.read("combined.tsv").splitlines()
        self.assertTrue(lines[0].startswith("#IMG ID\tIMG Name"))
        self.assertEqual(lines[1].split("\t")[3], "1001")
        self.assertEqual(lines[2].split("\t")[3:5], ["-", "-"])

    def test_reconcile(self):
        evidence = self.write("evidence.tsv",
                              "ID\tIMG 16S\tRNAmmer 16S\tInfernal 16S\tGenus\tSpecies\n"
                              "g1\t12\t7\t7\tEscherichia\tcoli\n"
                              "g2\t20\tNA\tNA\tEscherichia\tcoli\n"
                              "g3\t4\tNA\tNA\tBacillus\tsubtilis\n")
        rrndb = self.write("rrndb.tsv", "Genus\tSpecies\tStrain\t16S\tITS\t23S\t5S\n"
                                        "Escherichia\tcoli\tK-12\t7\t7\t7\t8\n")
        rc = self.run_cli("reconcile", "--evidence", evidence, "--rrndb", rrndb,
                          "--out", self.path("counts.tsv"), "--report", self.path("report.tsv"))
        self.assertEqual(rc, 0)
        self.assertEqual(self.read("counts.tsv"),
                         "#ID\tTrait\tProvenance\ng1\t7\tcorrected\ng3\t4\tobserved\n")
        report = self.read("report.tsv").splitlines()
        self.assertTrue(report[0].startswith("# Found 0 dodgy and 2 very dodgy"))
        self.assertTrue(report[2].startswith("corrected\tg1"))
        self.assertTrue(report[3].startswith("discarded\tg2"))

    def test_estimate_with_clusters(self):
        tree = self.write("tree.nwk", "((A:1,B:1):0,C:1);")
        traits = self.write("traits.tsv", "#ID\tTrait\nA\t2\nB\t4\n")
        otus = self.write("otus.txt", "0\tC\tC2\n")
        rc = self.run_cli("estimate", "--tree", tree, "--traits", traits, "--clusters", otus,
                          "--workers", "2", "--no-progress", "--out", self.path("all.tsv"))
        self.assertEqual(rc, 0)
        self.assertEqual(self.read("all.tsv"),
                         "#ID\tTrait\tProvenance\nA\t2\tobserved\nB\t4\tobserved\n"
                         "C\t3\testimated\nC2\t3\testimated via C\n")

    def test_estimate_bad_tree(self):
        tree = self.write("tree.nwk", "((A:1,B:1);")
        traits = self.write("traits.tsv", "#ID\tTrait\nA\t2\n")
        self.assertEqual(self.run_cli("estimate", "--tree", tree, "--traits", traits,
                                      "--out", self.path("all.tsv")), 1)

    def test_clades(self):
        genomes = self.write("combined.tsv",
                             "#IMG ID\tIMG Name\tIMG Tax\tGG ID\tGG Tax\t16S Count\tGenome Length\tGene Count\n"
                             f"1\ta\tx\t11\t{PREFIX};g__A;s__a\t10\t4000000\t4000\n"
                             f"2\tb\tx\t12\t{PREFIX};g__B;s__b\t2\t2000000\t2000\n"
                             f"3\tc\tx\t13\t{PREFIX};g__B;s__b\t4\t2000000\t2000\n"
                             "4\td\tx\t-\t-\t5\t1000000\t1000\n")
        rc = self.run_cli("clades", "--genomes", genomes, "--out", self.path("clades.tsv"),
                          "--trait-table", self.path("lineage_traits.tsv"))
        self.assertEqual(rc, 0)
        blocks = self.read("clades.tsv").split("\n\n")
        self.assertEqual(blocks[0].splitlines()[1], "k__Bacteria\t1\t6.5\t3000000")
        self.assertIn(f"{PREFIX};g__B;s__b\t2\t3\t2000000", blocks[6])
        self.assertIn(f"{PREFIX}\t6.5\t{PREFIX}", self.read("lineage_traits.tsv"))

        rc = self.run_cli("clades", "--genomes", genomes, "--per-genome", "--out", self.path("genomes.tsv"))
        self.assertEqual(rc, 0)
        self.assertEqual(self.read("genomes.tsv").splitlines()[1:5],
                         ["1\t1\t10\t4000000", "2\t1\t2\t2000000", "3\t1\t4\t2000000", "4\t1\t5\t1000000"])

    def test_correct_with_config_file(self):
        community = self.write("otus.tsv", "#OTU ID\tS1\nX\t100\nY\t100\n")
        traits = self.write("traits.tsv", "id\ttrait\tdesc\nX\t2\tk__A\nY\t1\tk__B\n")
        totals = self.write("totals.tsv", "S1\t300\n")
        config = self.write("config.toml", "[correct]\nlookup = \"desc\"\n")
        rc = self.run_cli("--config", config, "correct", "--community", community, "--traits", traits,
                          "--totals", totals, "--lookup", "id",
                          "--relative-out", self.path("rel.tsv"), "--absolute-out", self.path("abs.tsv"),
                          "--combined-out", self.path("both.tsv"))
        self.assertEqual(rc, 0)
        rel = self.read("rel.tsv").splitlines()
        self.assertEqual(rel[-1], "#Average trait\t1.5")
        self.assertTrue(rel[1].startswith("X\t0.333333333333333"))
        self.assertIn("#Corrected total\t200", self.read("abs.tsv"))
        self.assertTrue(self.read("both.tsv").startswith("#OTU ID\tS1 relative\tS1 absolute"))

    def test_correct_unmatched_taxa(self):
        community = self.write("otus.tsv", "#OTU ID\tS1\nX\t100\n")
        traits = self.write("traits.tsv", "id\ttrait\nQ\t2\n")
        config = self.write("config.toml", "[correct]\ncommunity = \"%s\"\ntraits = \"%s\"\nlookup = \"id\"\n"
                            % (community, traits))
        self.assertEqual(self.run_cli("--config", config, "correct", "--relative-out", self.path("rel.tsv")), 1)

    def test_correct_with_estimated_trait_table(self):
        community = self.write("otus.tsv", "#OTU ID\tS1\nX\t100\nY\t100\n")
        traits = self.write("traits.tsv", "#ID\tTrait\tProvenance\nX\t2\tobserved\nY\t1\testimated\n")
        with self.assertLogs("copyrighter.cli", level="ERROR") as logs:
            rc = self.run_cli("correct", "--community", community, "--traits", traits,
                              "--relative-out", self.path("rel.tsv"))
        self.assertEqual(rc, 1)
        self.assertIn("try lookup by id", logs.output[0])
        rc = self.run_cli("correct", "--community", community, "--traits", traits, "--lookup", "id",
                          "--relative-out", self.path("rel.tsv"))
        self.assertEqual(rc, 0)
        self.assertEqual(self.read("rel.tsv").splitlines()[-1], "#Average trait\t1.5")

    def test_missing_required_option(self):
        self.assertEqual(self.run_cli("correct"), 2)
        self.assertEqual(self.run_cli("estimate", "--tree", "x.nwk"), 2)


if __name__ == "__main__":
    unittest.main()
